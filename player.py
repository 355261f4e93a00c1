from PyQt6.QtCore import QObject, pyqtSignal as Signal
import bisect
import functools
import heapq
import itertools
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from config import BASE_BPM, DEFAULT_PREFERENCES
from models import NoteEvent, PlaybackState, Section

logger = logging.getLogger(__name__)


@dataclass(order=True)
class ScheduledEvent:
    offset: float
    seq: int = field(compare=True)
    action: Callable[[float], None] = field(compare=False)


class Transport:
    """Playback clock owning a single ordered queue of (offset, action) events.

    Offsets are in seconds at BASE_BPM; the transport advances at bpm / BASE_BPM.
    While looping, each event fires once per pass over [loop_start, loop_end).
    Actions receive the clock time the event was due at.
    """

    def __init__(self, clock: Callable[[], float] = time.perf_counter):
        self.clock = clock
        self.bpm = BASE_BPM
        self.loop = False
        self.loop_start = 0.0
        self.loop_end = 0.0
        self.loop_count = 0
        self.running = False
        self._events: List[ScheduledEvent] = []
        self._seq = itertools.count()
        self._cursor = 0
        self._pass = 0
        self._anchor_clock = 0.0
        self._anchor_position = 0.0

    @property
    def rate(self) -> float:
        return self.bpm / BASE_BPM

    @property
    def pending(self) -> int:
        return len(self._events) - self._cursor

    @property
    def scheduled(self) -> int:
        return len(self._events)

    def _span(self) -> float:
        return self.loop_end - self.loop_start if self.loop else 0.0

    def _looping(self) -> bool:
        return self.loop and self.loop_end > self.loop_start

    def _unwrapped(self, now: float) -> float:
        if not self.running:
            return self._anchor_position
        return self._anchor_position + (now - self._anchor_clock) * self.rate

    def _clock_at(self, unwrapped: float) -> float:
        return self._anchor_clock + (unwrapped - self._anchor_position) / self.rate

    @property
    def position(self) -> float:
        pos = self._unwrapped(self.clock())
        if self._looping():
            span = self._span()
            pos -= self._pass * span
            if pos >= self.loop_end:
                pos = self.loop_start + (pos - self.loop_end) % span
        return pos

    def submit(self, events: List[Tuple[float, Callable[[float], None]]]) -> None:
        """Replaces the whole queue in one step."""
        queue = [ScheduledEvent(offset, next(self._seq), action) for offset, action in events]
        queue.sort()
        self._events = queue
        self._cursor = 0

    def cancel(self) -> None:
        self._events = []
        self._cursor = 0

    def start(self, position: float = 0.0) -> None:
        self.running = True
        self._reset_to(position, self.clock())

    def stop(self) -> None:
        self.running = False
        self._anchor_position = 0.0
        self._cursor = 0
        self._pass = 0
        self.loop_count = 0

    def seek(self, position: float) -> None:
        self._reset_to(max(0.0, position), self.clock())

    def set_bpm(self, bpm: float) -> None:
        if bpm <= 0:
            raise ValueError(f"bpm must be positive, got {bpm}")
        self._rebase()
        self.bpm = bpm

    def set_loop(self, start: float, end: float, enabled: bool) -> None:
        self._rebase()
        self.loop_start = start
        self.loop_end = end
        self.loop = enabled

    def _reset_to(self, position: float, now: float) -> None:
        self._anchor_clock = now
        self._anchor_position = position
        self._pass = 0
        self._cursor = bisect.bisect_left([e.offset for e in self._events], position)

    def _rebase(self) -> None:
        # Fire anything already due, then restate the position in pass-0 terms
        # so rate or loop changes never replay or skip events.
        now = self.clock()
        self.tick(now)
        if not self.running:
            return
        position = self._unwrapped(now) - self._pass * self._span()
        self._anchor_clock = now
        self._anchor_position = position
        self._pass = 0

    def tick(self, now: Optional[float] = None) -> int:
        if not self.running:
            return 0
        now = self.clock() if now is None else now
        upto = self._unwrapped(now)
        due: List[Tuple[ScheduledEvent, float]] = []
        looping = self._looping()
        span = self._span()
        if looping and upto >= self.loop_end:
            # Drop whole passes missed while the clock stalled.
            current = 1 + int((upto - self.loop_end) // span)
            if current > self._pass + 1:
                self.loop_count += current - self._pass
                self._pass = current
                self._cursor = bisect.bisect_left([e.offset for e in self._events], upto - current * span)
        while True:
            shift = self._pass * span
            while self._cursor < len(self._events):
                event = self._events[self._cursor]
                if looping and event.offset >= self.loop_end:
                    break
                at = event.offset + shift
                if at > upto:
                    break
                due.append((event, at))
                self._cursor += 1
            if looping and upto >= self.loop_end + shift:
                self._pass += 1
                self.loop_count += 1
                self._cursor = bisect.bisect_left([e.offset for e in self._events], self.loop_start)
                continue
            break
        for event, at in due:
            event.action(self._clock_at(at))
        return len(due)


class Player(QObject):
    status_updated = Signal(str)
    progress_updated = Signal(float)
    note_active = Signal(str, bool)
    playback_state_changed = Signal(bool)
    section_changed = Signal(int)
    section_completed = Signal(int)
    playback_finished = Signal()

    def __init__(self, synth, tracker=None, transport: Optional[Transport] = None, config: Optional[Dict] = None):
        super().__init__()
        self.config = config or {}
        self.synth = synth
        self.tracker = tracker
        self.transport = transport or Transport()
        self.sections: List[Section] = []
        self.state = PlaybackState(
            loop_enabled=bool(self.config.get('isLooping', DEFAULT_PREFERENCES['isLooping'])),
            tempo_scale=float(self.config.get('playbackRate', DEFAULT_PREFERENCES['playbackRate'])),
        )
        self.active_notes: Counter = Counter()
        self._pulses: List[Tuple[float, int, str]] = []
        self._pulse_seq = itertools.count()
        self.debug_log: Optional[List[str]] = [] if self.config.get('debug_mode') else None

    def _log_debug(self, msg: str):
        if self.debug_log is not None:
            self.debug_log.append(msg)
            self.status_updated.emit(msg)

    @property
    def current_section(self) -> Optional[Section]:
        idx = self.state.current_section_index
        if 0 <= idx < len(self.sections):
            return self.sections[idx]
        return None

    @property
    def displayed_time(self) -> float:
        return self.state.transport_position_seconds

    def set_sections(self, sections: List[Section], current_index: int = 0):
        self.stop()
        self.sections = list(sections)
        if self.sections:
            current_index = max(0, min(current_index, len(self.sections) - 1))
        else:
            current_index = 0
        self.state.current_section_index = current_index
        self.state.transport_position_seconds = 0.0
        self.section_changed.emit(current_index)

    # --- Transport control ---
    def play(self):
        section = self.current_section
        if section is None:
            return
        self.transport.stop()
        self.transport.cancel()
        self._clear_active_notes()

        events = [(note.start_time - section.start_time, functools.partial(self._trigger_note, note))
                  for note in section.notes]
        self.transport.submit(events)
        self.transport.set_loop(0.0, section.length, self.state.loop_enabled)
        self.transport.set_bpm(BASE_BPM * self.state.tempo_scale)
        self.transport.start(0.0)

        self.state.transport_position_seconds = 0.0
        self.state.is_playing = True
        self._log_debug(f"\n--- SECTION {section.index} | {section.start_time:.2f}s - {section.end_time:.2f}s | "
                        f"{len(section.notes)} notes | rate {self.state.tempo_scale:.2f} ---")
        self.status_updated.emit(f"Playing section {section.index + 1}/{len(self.sections)}")
        self.playback_state_changed.emit(True)

    def stop(self, release: bool = True):
        """Stops the transport. With release=False notes already sounding keep their own note-off timers."""
        was_playing = self.state.is_playing
        self.transport.stop()
        self.transport.cancel()
        self._clear_active_notes()
        self.state.is_playing = False
        self.state.transport_position_seconds = 0.0
        if was_playing:
            if release:
                self.synth.all_notes_off()
            self.status_updated.emit("Stopped.")
            self.playback_state_changed.emit(False)

    def toggle(self):
        if self.state.is_playing:
            self.stop()
        else:
            self.play()

    def seek(self, seconds: float):
        section = self.current_section
        if section is None:
            return
        seconds = max(0.0, min(seconds, section.length))
        if self.state.is_playing:
            self._clear_active_notes()
            self.transport.seek(seconds)
        self.state.transport_position_seconds = seconds
        self.progress_updated.emit(seconds)

    def set_tempo_scale(self, scale: float):
        if scale <= 0:
            raise ValueError(f"tempo scale must be positive, got {scale}")
        self.state.tempo_scale = scale
        if self.state.is_playing:
            self.transport.set_bpm(BASE_BPM * scale)

    def set_loop(self, enabled: bool):
        self.state.loop_enabled = enabled
        section = self.current_section
        if self.state.is_playing and section is not None:
            self.transport.set_loop(0.0, section.length, enabled)

    # --- Section navigation ---
    def previous_section(self):
        if self.state.current_section_index <= 0:
            return
        self._change_section(self.state.current_section_index - 1)

    def next_section(self):
        idx = self.state.current_section_index
        if idx >= len(self.sections) - 1:
            return
        self.stop()
        if self.tracker is not None and self.tracker.mark_complete(idx):
            self.section_completed.emit(idx)
        self._change_section(idx + 1)

    def select_section(self, index: int):
        if not 0 <= index < len(self.sections) or index == self.state.current_section_index:
            return
        self._change_section(index)

    def _change_section(self, index: int):
        self.stop()
        self.state.current_section_index = index
        self.state.transport_position_seconds = 0.0
        if self.tracker is not None:
            self.tracker.set_current_section(index)
        self.progress_updated.emit(0.0)
        self.section_changed.emit(index)

    # --- Clock-driven work ---
    def tick(self):
        if not self.state.is_playing:
            return
        self.transport.tick()
        self._expire_pulses(self.transport.clock())
        section = self.current_section
        if not self.state.loop_enabled and section is not None and self.transport.position >= section.length:
            self._log_debug(f"Section {section.index} finished.")
            self.stop(release=False)
            self.playback_finished.emit()

    def poll_position(self) -> float:
        if self.state.is_playing:
            self.state.transport_position_seconds = self.transport.position
        self.progress_updated.emit(self.state.transport_position_seconds)
        return self.state.transport_position_seconds

    def _trigger_note(self, note: NoteEvent, when: float):
        self.synth.trigger_attack_release(note.pitch_name, note.duration, when, note.velocity)
        self.active_notes[note.pitch_name] += 1
        heapq.heappush(self._pulses, (when + note.duration, next(self._pulse_seq), note.pitch_name))
        self._log_debug(f"[ACT] {when:.4f} | PRESS | {note.pitch_name} ({note.duration:.3f}s)")
        if self.active_notes[note.pitch_name] == 1:
            self.note_active.emit(note.pitch_name, True)

    def _expire_pulses(self, now: float):
        while self._pulses and self._pulses[0][0] <= now:
            _, _, name = heapq.heappop(self._pulses)
            self.active_notes[name] -= 1
            if self.active_notes[name] <= 0:
                del self.active_notes[name]
                self.note_active.emit(name, False)

    def _clear_active_notes(self):
        names = list(self.active_notes)
        self.active_notes.clear()
        self._pulses.clear()
        for name in names:
            self.note_active.emit(name, False)
