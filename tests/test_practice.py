"""Tests for loading songs and rebuilding sections through the practice controller."""

import mido
import pytest

from errors import EmptySelectionError, InputError, ParseError
from models import ParsedSong
from player import Player, Transport
from practice import PracticeController
from progress import ProgressTracker

from conftest import make_song


@pytest.fixture
def controller(synth, clock, storage):
    tracker = ProgressTracker(storage)
    player = Player(synth, tracker, transport=Transport(clock))
    return PracticeController(player, tracker, storage)


def _song():
    left = [(i * 1.0, 0.5, 'C3') for i in range(20)]
    right = [(i * 0.5, 0.25, 'E5') for i in range(40)]
    return make_song(left, right, duration=20.0)


def _write_midi(path):
    mid = mido.MidiFile(ticks_per_beat=480)
    track = mido.MidiTrack()
    for _ in range(8):
        track.append(mido.Message('note_on', note=60, velocity=90, time=0))
        track.append(mido.Message('note_off', note=60, velocity=0, time=480))
    mid.tracks.append(track)
    mid.save(str(path))


# ── Loading ──────────────────────────────────────────────────


def test_load_song_installs_sections(controller, identity):
    sections = controller.load_song(_song(), identity)
    assert len(sections) == 3
    assert controller.sections == sections
    assert controller.player.state.current_section_index == 0
    assert sum(len(s.notes) for s in sections) == 60


def test_song_without_tracks_is_rejected(controller, identity):
    with pytest.raises(InputError):
        controller.load_song(ParsedSong(tracks=[], duration=0.0), identity)
    assert controller.song is None
    assert controller.sections == []


def test_saved_position_restored_on_load(controller, storage, identity):
    storage.save_song_progress(identity.key, {'currentSectionIndex': 2, 'completedSections': {'0': 100, '1': 100}})
    controller.load_song(_song(), identity)
    assert controller.player.state.current_section_index == 2
    assert controller.tracker.completed == {0: 100, 1: 100}


def test_load_file_records_recent_file(controller, storage, tmp_path):
    path = tmp_path / 'scale.mid'
    _write_midi(path)
    sections = controller.load_file(str(path))
    assert sum(len(s.notes) for s in sections) == 8
    assert controller.identity.file_name == 'scale.mid'
    assert [f['name'] for f in storage.get_recent_files()] == ['scale.mid']


def test_unreadable_file_is_not_recorded(controller, storage, tmp_path):
    path = tmp_path / 'broken.mid'
    path.write_bytes(b'garbage')
    with pytest.raises(ParseError):
        controller.load_file(str(path))
    assert storage.get_recent_files() == []
    assert controller.song is None


# ── Rebuilding ───────────────────────────────────────────────


def test_hand_change_rebuilds_and_saves_preference(controller, storage, identity):
    controller.load_song(_song(), identity)
    sections = controller.set_hand_selection('left')
    assert sum(len(s.notes) for s in sections) == 20
    assert controller.hand_selection == 'left'
    assert storage.get_preferences()['selectedHand'] == 'left'


def test_empty_hand_keeps_previous_state(controller, storage, identity):
    song = make_song(left=[(0.0, 1.0, 'C3')], duration=4.0)
    song.tracks = song.tracks[:1]
    controller.load_song(song, identity)
    before = controller.sections
    with pytest.raises(EmptySelectionError):
        controller.set_hand_selection('right')
    assert controller.sections == before
    assert controller.hand_selection == 'both'
    assert storage.get_preferences()['selectedHand'] == 'both'


def test_bars_change_rebuilds_sections(controller, storage, identity):
    controller.load_song(_song(), identity)
    sections = controller.set_bars_per_section(2)
    assert len(sections) == 5
    assert storage.get_preferences()['barsPerSection'] == 2


def test_invalid_bars_keeps_sections(controller, identity):
    controller.load_song(_song(), identity)
    with pytest.raises(ValueError):
        controller.set_bars_per_section(0)
    assert controller.bars_per_section == 4
    assert len(controller.sections) == 3


def test_rebuild_stops_playback(controller, identity):
    controller.load_song(_song(), identity)
    controller.player.play()
    controller.set_bars_per_section(8)
    assert not controller.player.state.is_playing


def test_settings_before_a_song_only_update_state(controller):
    assert controller.set_hand_selection('right') == []
    assert controller.hand_selection == 'right'


def test_apply_preferences(controller, synth):
    controller.apply_preferences({'playbackRate': 0.5, 'isLooping': True, 'volume': 30,
                                  'selectedHand': 'left', 'barsPerSection': 2})
    assert controller.player.state.tempo_scale == 0.5
    assert controller.player.state.loop_enabled is True
    assert synth.volume == 30
    assert controller.hand_selection == 'left'
    assert controller.bars_per_section == 2


def test_apply_preferences_ignores_bad_values(controller):
    controller.apply_preferences({'selectedHand': 'feet', 'barsPerSection': 'many'})
    assert controller.hand_selection == 'both'
    assert controller.bars_per_section == 4


def test_saved_hand_without_notes_falls_back_to_both(controller, storage, identity):
    storage.save_preferences({'selectedHand': 'right'})
    controller.apply_preferences(storage.get_preferences())
    song = make_song(left=[(0.0, 1.0, 'C4'), (2.0, 1.0, 'D4')], duration=4.0)
    song.tracks = song.tracks[:1]
    sections = controller.load_song(song, identity)
    assert sum(len(s.notes) for s in sections) == 2
    assert controller.hand_selection == 'both'
    assert storage.get_preferences()['selectedHand'] == 'both'


def test_saved_hand_with_notes_is_kept_on_load(controller, storage, identity):
    controller.apply_preferences({'selectedHand': 'left'})
    sections = controller.load_song(_song(), identity)
    assert sum(len(s.notes) for s in sections) == 20
    assert controller.hand_selection == 'left'


def test_shorter_section_list_caps_completion(controller, identity):
    controller.set_bars_per_section(1)
    controller.load_song(_song(), identity)
    assert len(controller.sections) == 10
    for _ in range(9):
        controller.player.next_section()
    controller.set_bars_per_section(4)
    stats = controller.tracker.derived_stats()
    assert stats.section_count == 3
    assert stats.completed_count == 3
    assert stats.completion_percentage == 100
    assert controller.player.state.current_section_index == 2
