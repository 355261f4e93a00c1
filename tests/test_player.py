"""Tests for the transport queue and section playback, driven by a fake clock."""

import pytest

from config import DEFAULT_PREFERENCES
from models import NoteEvent, PlaybackState, Section
from player import Player, Transport
from progress import ProgressTracker


def _section(index=0, start=0.0, end=2.0, notes=((0.0, 0.5, 'C4'), (1.0, 0.5, 'E4'))):
    events = tuple(NoteEvent(start + t, d, p) for t, d, p in notes)
    return Section(index, start, end, events)


def _three_sections():
    return [_section(0, 0.0, 2.0), _section(1, 2.0, 4.0), _section(2, 4.0, 5.0, notes=((0.0, 0.5, 'G4'),))]


@pytest.fixture
def player(synth, clock):
    return Player(synth, transport=Transport(clock), config={'isLooping': True})


def _record(signal):
    calls = []
    signal.connect(lambda *args: calls.append(args))
    return calls


# ── Transport ────────────────────────────────────────────────


def test_events_fire_in_offset_order(clock):
    transport = Transport(clock)
    fired = []
    transport.submit([
        (1.0, lambda at: fired.append('b')),
        (0.0, lambda at: fired.append('a')),
        (1.0, lambda at: fired.append('c')),
    ])
    transport.start()
    clock.advance(1.0)
    assert transport.tick() == 3
    assert fired == ['a', 'b', 'c']


def test_submit_replaces_queue(clock):
    transport = Transport(clock)
    fired = []
    transport.submit([(0.0, lambda at: fired.append('old'))])
    transport.submit([(0.0, lambda at: fired.append('new'))])
    transport.start()
    transport.tick()
    assert fired == ['new']
    assert transport.scheduled == 1
    assert transport.pending == 0


def test_cancel_clears_queue(clock):
    transport = Transport(clock)
    transport.submit([(0.0, lambda at: None), (1.0, lambda at: None)])
    transport.cancel()
    transport.start()
    clock.advance(5.0)
    assert transport.tick() == 0


def test_nothing_fires_while_stopped(clock):
    transport = Transport(clock)
    transport.submit([(0.0, lambda at: None)])
    assert transport.tick() == 0
    assert transport.position == 0.0


def test_rate_scales_with_bpm(clock):
    transport = Transport(clock)
    transport.set_bpm(60)
    assert transport.rate == 0.5
    with pytest.raises(ValueError):
        transport.set_bpm(0)


def test_action_gets_due_clock_time(clock):
    transport = Transport(clock)
    times = []
    transport.submit([(1.0, times.append)])
    transport.set_bpm(60)
    transport.start()
    clock.advance(3.0)
    transport.tick()
    assert times == [pytest.approx(102.0)]


def test_seek_skips_earlier_events(clock):
    transport = Transport(clock)
    fired = []
    transport.submit([(t, lambda at, t=t: fired.append(t)) for t in (0.0, 1.0, 2.0)])
    transport.start()
    transport.seek(1.5)
    clock.advance(0.5)
    transport.tick()
    assert fired == [2.0]


def test_loop_fires_each_event_once_per_pass(clock):
    transport = Transport(clock)
    fired = []
    transport.submit([(0.0, lambda at: fired.append(0)), (1.0, lambda at: fired.append(1))])
    transport.set_loop(0.0, 2.0, True)
    transport.start()
    for _ in range(12):
        clock.advance(0.5)
        transport.tick()
    # Six seconds is exactly three passes; the fourth pass starts at 6.0.
    assert fired == [0, 1, 0, 1, 0, 1, 0]
    assert transport.loop_count == 3


def test_position_wraps_inside_loop(clock):
    transport = Transport(clock)
    transport.set_loop(0.0, 2.0, True)
    transport.start()
    clock.advance(2.5)
    assert transport.position == pytest.approx(0.5)


def test_stalled_clock_skips_missed_passes(clock):
    transport = Transport(clock)
    fired = []
    transport.submit([(0.0, lambda at: fired.append(0)), (1.0, lambda at: fired.append(1))])
    transport.set_loop(0.0, 2.0, True)
    transport.start()
    transport.tick()
    clock.advance(7.0)
    transport.tick()
    assert fired == [0, 1]
    assert transport.loop_count == 3


def test_stop_resets_transport(clock):
    transport = Transport(clock)
    transport.set_loop(0.0, 2.0, True)
    transport.start()
    clock.advance(4.5)
    transport.tick()
    transport.stop()
    assert transport.loop_count == 0
    assert transport.position == 0.0


# ── Player: playback ─────────────────────────────────────────


def test_play_twice_does_not_double_schedule(player, synth, clock):
    player.set_sections([_section()])
    player.play()
    player.play()
    assert player.transport.scheduled == 2
    clock.advance(1.5)
    player.tick()
    assert synth.pitches == ['C4', 'E4']


def test_play_with_no_sections_is_noop(player, synth):
    player.set_sections([])
    player.play()
    player.toggle()
    assert not player.state.is_playing
    assert player.current_section is None


def test_notes_are_relative_to_section_start(player, synth, clock):
    player.set_sections([_section(0, 0.0, 2.0), _section(1, 2.0, 4.0)], current_index=1)
    player.play()
    player.tick()
    assert synth.triggered[0][0] == 'C4'
    assert synth.triggered[0][2] == pytest.approx(100.0)


def test_loop_replays_section(player, synth, clock):
    player.set_sections([_section()])
    player.play()
    clock.advance(2.5)
    player.tick()
    assert synth.pitches == ['C4', 'E4', 'C4']
    assert [t[2] for t in synth.triggered] == [pytest.approx(100.0), pytest.approx(101.0), pytest.approx(102.0)]
    assert player.poll_position() == pytest.approx(0.5)


def test_without_loop_playback_stops_at_section_end(player, synth, clock):
    finished = _record(player.playback_finished)
    states = _record(player.playback_state_changed)
    player.set_loop(False)
    player.set_sections([_section()])
    player.play()
    clock.advance(2.0)
    player.tick()
    assert synth.pitches == ['C4', 'E4']
    assert not player.state.is_playing
    assert finished == [()]
    assert states == [(True,), (False,)]
    # The last notes keep ringing on their own timers.
    assert synth.notes_off_calls == 0


def test_turning_loop_off_mid_pass_finishes_current_pass(player, synth, clock):
    finished = _record(player.playback_finished)
    player.set_sections([_section()])
    player.play()
    clock.advance(2.5)
    player.tick()
    player.set_loop(False)
    clock.advance(1.5)
    player.tick()
    assert synth.pitches == ['C4', 'E4', 'C4', 'E4']
    assert finished == [()]


def test_tempo_scale_slows_playback(player, synth, clock):
    player.set_tempo_scale(0.5)
    player.set_sections([_section()])
    player.play()
    clock.advance(1.0)
    player.tick()
    assert synth.pitches == ['C4']
    clock.advance(1.0)
    player.tick()
    assert synth.pitches == ['C4', 'E4']
    assert synth.triggered[1][2] == pytest.approx(102.0)


def test_tempo_change_applies_while_playing(player, synth, clock):
    player.set_sections([_section()])
    player.play()
    clock.advance(0.5)
    player.tick()
    player.set_tempo_scale(0.5)
    clock.advance(0.5)
    player.tick()
    assert synth.pitches == ['C4']
    clock.advance(0.5)
    player.tick()
    assert synth.pitches == ['C4', 'E4']
    assert synth.triggered[1][2] == pytest.approx(101.5)


def test_invalid_tempo_scale(player):
    with pytest.raises(ValueError):
        player.set_tempo_scale(0)


def test_seek_is_clamped_to_section(player):
    player.set_sections([_section()])
    player.seek(5.0)
    assert player.displayed_time == 2.0
    player.seek(-1.0)
    assert player.displayed_time == 0.0


# ── Player: active notes ─────────────────────────────────────


def test_note_pulse_lasts_note_duration(player, clock):
    active = _record(player.note_active)
    player.set_sections([_section(notes=((0.0, 0.5, 'C4'),))])
    player.play()
    player.tick()
    assert active == [('C4', True)]
    clock.advance(0.4)
    player.tick()
    assert player.active_notes['C4'] == 1
    clock.advance(0.2)
    player.tick()
    assert active == [('C4', True), ('C4', False)]
    assert 'C4' not in player.active_notes


def test_overlapping_pulses_release_on_last(player, clock):
    active = _record(player.note_active)
    player.set_sections([_section(notes=((0.0, 1.0, 'C4'), (0.5, 1.0, 'C4')))])
    player.play()
    player.tick()
    clock.advance(0.5)
    player.tick()
    assert player.active_notes['C4'] == 2
    clock.advance(0.5)
    player.tick()
    assert player.active_notes['C4'] == 1
    clock.advance(0.5)
    player.tick()
    assert active == [('C4', True), ('C4', False)]


def test_stop_clears_active_notes(player, synth):
    active = _record(player.note_active)
    player.set_sections([_section()])
    player.play()
    player.tick()
    player.stop()
    assert active[-1] == ('C4', False)
    assert not player.active_notes
    assert synth.notes_off_calls == 1


def test_stop_when_idle_is_quiet(player, synth):
    states = _record(player.playback_state_changed)
    player.stop()
    assert states == []
    assert synth.notes_off_calls == 0


# ── Player: navigation ───────────────────────────────────────


@pytest.fixture
def tracked_player(synth, clock, storage, identity):
    tracker = ProgressTracker(storage)
    tracker.load_song(identity, 3)
    return Player(synth, tracker, transport=Transport(clock))


def test_next_marks_complete_and_previous_keeps_it(tracked_player):
    completed = _record(tracked_player.section_completed)
    tracked_player.set_sections(_three_sections(), current_index=1)
    tracked_player.next_section()
    assert tracked_player.state.current_section_index == 2
    assert tracked_player.tracker.completed == {1: 100}
    assert completed == [(1,)]
    tracked_player.previous_section()
    assert tracked_player.state.current_section_index == 1
    assert tracked_player.tracker.completed == {1: 100}


def test_next_on_completed_section_does_not_recount(tracked_player):
    completed = _record(tracked_player.section_completed)
    tracked_player.set_sections(_three_sections())
    tracked_player.next_section()
    tracked_player.previous_section()
    tracked_player.next_section()
    assert completed == [(0,)]


def test_navigation_bounds_are_noops(tracked_player):
    changes = _record(tracked_player.section_changed)
    tracked_player.set_sections(_three_sections())
    tracked_player.previous_section()
    tracked_player.set_sections(_three_sections(), current_index=2)
    tracked_player.next_section()
    assert changes == [(0,), (2,)]
    assert tracked_player.tracker.completed == {}


def test_changing_section_stops_playback(tracked_player):
    tracked_player.set_sections(_three_sections())
    tracked_player.play()
    tracked_player.select_section(2)
    assert not tracked_player.state.is_playing
    assert tracked_player.tracker.current_section_index == 2


def test_select_section_out_of_range_ignored(tracked_player):
    tracked_player.set_sections(_three_sections())
    tracked_player.select_section(7)
    assert tracked_player.state.current_section_index == 0


def test_set_sections_clamps_index(player):
    player.set_sections(_three_sections(), current_index=9)
    assert player.state.current_section_index == 2


def test_loop_default_matches_stored_preferences(synth, clock):
    player = Player(synth, transport=Transport(clock))
    assert player.state.loop_enabled is DEFAULT_PREFERENCES['isLooping']
    assert PlaybackState().loop_enabled is DEFAULT_PREFERENCES['isLooping']
    assert player.state.tempo_scale == DEFAULT_PREFERENCES['playbackRate']
