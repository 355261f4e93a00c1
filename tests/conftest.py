import pytest
from PyQt6.QtCore import QCoreApplication

from models import MidiTrack, NoteEvent, ParsedSong, SongIdentity
from storage import MemoryStore, PracticeStorage
from synth import Synthesizer


class FakeClock:
    """Manually advanced stand-in for time.perf_counter."""

    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class RecordingSynth(Synthesizer):
    def __init__(self):
        self.triggered = []
        self.volume = None
        self.notes_off_calls = 0
        self.closed = False

    def trigger_attack_release(self, pitch_name, duration, scheduled_time=None, velocity=0.8):
        self.triggered.append((pitch_name, duration, scheduled_time, velocity))

    def set_volume(self, volume):
        self.volume = volume

    def all_notes_off(self):
        self.notes_off_calls += 1

    def close(self):
        self.closed = True

    @property
    def pitches(self):
        return [t[0] for t in self.triggered]


def make_song(left=(), right=(), duration=None, tempo_bpm=120.0, beats=4, extra_tracks=()):
    """Builds a two-track song from (start, duration, pitch) tuples."""
    tracks = []
    for index, track_notes in enumerate([left, right, *extra_tracks]):
        notes = [NoteEvent(start, dur, pitch, track_index=index) for start, dur, pitch in track_notes]
        tracks.append(MidiTrack(index=index, name=f"Track {index}", notes=notes))
    if duration is None:
        duration = max((n.end_time for t in tracks for n in t.notes), default=0.0)
    return ParsedSong(tracks=tracks, duration=duration, tempo_bpm=tempo_bpm, beats_per_measure=beats, name='song.mid')


@pytest.fixture(scope='session', autouse=True)
def qt_core_app():
    app = QCoreApplication.instance() or QCoreApplication([])
    yield app


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def synth():
    return RecordingSynth()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def storage(store):
    return PracticeStorage(store)


@pytest.fixture
def identity():
    return SongIdentity('song.mid', 1234, 1700000000000)
