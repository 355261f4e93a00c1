import bisect
import io
import logging
import os
from collections import defaultdict, deque
from typing import Deque, Dict, List, Optional, Tuple

import mido

from config import MIN_NOTE_DURATION
from errors import ParseError
from models import MidiTrack, NoteEvent, ParsedSong, midi_note_name

logger = logging.getLogger(__name__)

DEFAULT_TEMPO = 500000  # microseconds per beat (120 bpm)


def _has_notes(track: mido.MidiTrack) -> bool:
    return any(msg.type == 'note_on' and msg.velocity > 0 for msg in track)


class TempoMap:
    """Converts absolute ticks to seconds across every set_tempo change in the file."""

    def __init__(self, ticks_per_beat: int, changes: List[Tuple[int, int]]):
        self.ticks_per_beat = ticks_per_beat
        changes = sorted(changes, key=lambda c: c[0])
        if not changes or changes[0][0] != 0:
            changes.insert(0, (0, DEFAULT_TEMPO))
        self._ticks: List[int] = []
        self._tempos: List[int] = []
        self._seconds: List[float] = []
        elapsed = 0.0
        for tick, tempo in changes:
            if self._ticks:
                elapsed += mido.tick2second(tick - self._ticks[-1], ticks_per_beat, self._tempos[-1])
                if tick == self._ticks[-1]:
                    # Later change at the same tick wins.
                    self._tempos[-1] = tempo
                    continue
            self._ticks.append(tick)
            self._tempos.append(tempo)
            self._seconds.append(elapsed)

    def to_seconds(self, tick: int) -> float:
        i = bisect.bisect_right(self._ticks, tick) - 1
        return self._seconds[i] + mido.tick2second(tick - self._ticks[i], self.ticks_per_beat, self._tempos[i])


class MidiParser:
    @staticmethod
    def parse_file(path: str) -> ParsedSong:
        try:
            midi_file = mido.MidiFile(filename=path)
        except (OSError, EOFError, ValueError, KeyError, IndexError) as e:
            logger.error("Failed to parse MIDI file %s: %s", path, e)
            raise ParseError(f"Failed to parse MIDI file {os.path.basename(path)}: {e}") from e
        return MidiParser.parse_structure(midi_file, os.path.basename(path))

    @staticmethod
    def parse_bytes(data: bytes, name: str = '') -> ParsedSong:
        try:
            midi_file = mido.MidiFile(file=io.BytesIO(data))
        except (OSError, EOFError, ValueError, KeyError, IndexError) as e:
            logger.error("Failed to parse MIDI payload %r: %s", name, e)
            raise ParseError(f"Failed to parse MIDI data: {e}") from e
        return MidiParser.parse_structure(midi_file, name)

    @staticmethod
    def parse_structure(midi_file: mido.MidiFile, name: str = '') -> ParsedSong:
        """Every MTrk chunk becomes a MidiTrack, empty ones included, so track positions match the file.

        The exception is a format 1 conductor track: a first track without notes is read
        for tempo and meter only, so position 0 is the first track that can hold notes.
        """
        tempo_changes: List[Tuple[int, int]] = []
        time_signatures: List[Tuple[int, int, int]] = []
        for track in midi_file.tracks:
            abs_tick = 0
            for msg in track:
                abs_tick += msg.time
                if msg.type == 'set_tempo':
                    tempo_changes.append((abs_tick, msg.tempo))
                elif msg.type == 'time_signature':
                    time_signatures.append((abs_tick, msg.numerator, msg.denominator))

        tempo_map = TempoMap(midi_file.ticks_per_beat, tempo_changes)
        note_tracks = list(midi_file.tracks)
        if midi_file.type == 1 and note_tracks and not _has_notes(note_tracks[0]):
            note_tracks = note_tracks[1:]
        tracks = [MidiParser._parse_track(i, track, tempo_map) for i, track in enumerate(note_tracks)]

        tempo_bpm: Optional[float] = None
        if tempo_changes:
            tempo_bpm = mido.tempo2bpm(min(tempo_changes, key=lambda c: c[0])[1])
        beats, beat_type = None, None
        if time_signatures:
            _, beats, beat_type = min(time_signatures, key=lambda ts: ts[0])

        duration = max((n.end_time for t in tracks for n in t.notes), default=0.0)
        song = ParsedSong(tracks=tracks, duration=duration, tempo_bpm=tempo_bpm,
                          beats_per_measure=beats, beat_type=beat_type, name=name)
        logger.info("Parsed %r: %d tracks, %d notes, %.2fs", name, len(tracks), song.note_count, duration)
        return song

    @staticmethod
    def _parse_track(index: int, track: mido.MidiTrack, tempo_map: TempoMap) -> MidiTrack:
        pending: Dict[Tuple[int, int], Deque[Tuple[int, int]]] = defaultdict(deque)
        raw: List[Tuple[int, int, int, int]] = []  # (start_tick, end_tick, pitch, velocity)
        name = ''
        abs_tick = 0
        for msg in track:
            abs_tick += msg.time
            if msg.type == 'track_name' and not name:
                name = msg.name
            elif msg.type == 'note_on' and msg.velocity > 0:
                pending[(msg.channel, msg.note)].append((abs_tick, msg.velocity))
            elif msg.type == 'note_off' or (msg.type == 'note_on' and msg.velocity == 0):
                queue = pending.get((msg.channel, msg.note))
                if queue:
                    start_tick, velocity = queue.popleft()
                    raw.append((start_tick, abs_tick, msg.note, velocity))

        for (_, pitch), queue in pending.items():
            for start_tick, velocity in queue:
                if abs_tick > start_tick:
                    raw.append((start_tick, abs_tick, pitch, velocity))

        raw.sort(key=lambda r: (r[0], r[2]))
        notes = []
        for start_tick, end_tick, pitch, velocity in raw:
            start = tempo_map.to_seconds(start_tick)
            end = tempo_map.to_seconds(end_tick)
            notes.append(NoteEvent(
                start_time=start,
                duration=max(MIN_NOTE_DURATION, end - start),
                pitch_name=midi_note_name(pitch),
                velocity=velocity / 127.0,
                track_index=index,
            ))
        return MidiTrack(index=index, name=name or f"Track {index}", notes=notes)
