import logging
import threading
from typing import Dict, Optional, Set

import mido

from models import note_name_to_midi

logger = logging.getLogger(__name__)


class Synthesizer:
    """Fire-and-forget sound output. Subclasses implement trigger_attack_release."""

    def trigger_attack_release(self, pitch_name: str, duration: float,
                               scheduled_time: Optional[float] = None, velocity: float = 0.8) -> None:
        raise NotImplementedError

    def set_volume(self, volume: int) -> None:
        pass

    def all_notes_off(self) -> None:
        pass

    def close(self) -> None:
        pass


class NullSynth(Synthesizer):
    """Used when no MIDI output port is available; playback still drives the visuals."""

    def trigger_attack_release(self, pitch_name, duration, scheduled_time=None, velocity=0.8):
        pass


class MidiOutSynth(Synthesizer):
    """Sends notes to a MIDI output port (software synth or keyboard); note-offs run on timers."""

    def __init__(self, port_name: Optional[str] = None, volume: int = 75, channel: int = 0):
        self.port = mido.open_output(port_name)
        self.channel = channel
        self.volume = volume
        self._lock = threading.Lock()
        self._timers: Set[threading.Timer] = set()
        self._sounding: Dict[int, int] = {}
        logger.info("Opened MIDI output %s", self.port.name)

    @staticmethod
    def available_ports():
        try:
            return mido.get_output_names()
        except Exception as e:
            logger.warning("Could not list MIDI outputs: %s", e)
            return []

    def set_volume(self, volume: int) -> None:
        self.volume = max(0, min(100, int(volume)))

    def trigger_attack_release(self, pitch_name, duration, scheduled_time=None, velocity=0.8):
        # Sent immediately: the transport fires events within one tick of scheduled_time.
        pitch = note_name_to_midi(pitch_name)
        midi_velocity = int(round(max(0.0, min(1.0, velocity)) * 127 * self.volume / 100))
        if midi_velocity <= 0:
            return
        with self._lock:
            self.port.send(mido.Message('note_on', note=pitch, velocity=midi_velocity, channel=self.channel))
            self._sounding[pitch] = self._sounding.get(pitch, 0) + 1
            timer = threading.Timer(duration, self._release, args=(pitch,))
            timer.daemon = True
            self._timers.add(timer)
        timer.start()

    def _release(self, pitch: int) -> None:
        with self._lock:
            self._timers = {t for t in self._timers if t.is_alive() and t is not threading.current_thread()}
            count = self._sounding.get(pitch, 0)
            if count <= 0:
                return
            if count == 1:
                del self._sounding[pitch]
            else:
                self._sounding[pitch] = count - 1
            self.port.send(mido.Message('note_off', note=pitch, velocity=0, channel=self.channel))

    def all_notes_off(self) -> None:
        with self._lock:
            for timer in self._timers:
                timer.cancel()
            self._timers.clear()
            for pitch in self._sounding:
                self.port.send(mido.Message('note_off', note=pitch, velocity=0, channel=self.channel))
            self._sounding.clear()

    def close(self) -> None:
        self.all_notes_off()
        self.port.close()
