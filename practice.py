import logging
from typing import Dict, List, Optional

from analysis import SectionAnalyzer
from config import HAND_BOTH, HAND_SELECTIONS
from core import MidiParser
from errors import EmptySelectionError, InputError
from models import ParsedSong, Section, SongIdentity
from player import Player
from progress import ProgressTracker
from storage import PracticeStorage

logger = logging.getLogger(__name__)


class PracticeController:
    """Loads songs and rebuilds sections when the hand or bars-per-section setting changes.

    Every rebuild computes the new section list first and only then swaps it
    in, so a failed rebuild leaves song, sections, playback and progress as they were.
    """

    def __init__(self, player: Player, tracker: ProgressTracker, storage: PracticeStorage):
        self.player = player
        self.tracker = tracker
        self.storage = storage
        self.song: Optional[ParsedSong] = None
        self.identity: Optional[SongIdentity] = None
        self.hand_selection = HAND_BOTH
        self.bars_per_section = 4

    @property
    def sections(self) -> List[Section]:
        return self.player.sections

    def apply_preferences(self, prefs: Dict):
        self.player.set_tempo_scale(float(prefs.get('playbackRate', 1.0)))
        self.player.set_loop(bool(prefs.get('isLooping', False)))
        self.player.synth.set_volume(int(prefs.get('volume', 75)))
        hand = prefs.get('selectedHand', HAND_BOTH)
        self.hand_selection = hand if hand in HAND_SELECTIONS else HAND_BOTH
        bars = prefs.get('barsPerSection', 4)
        self.bars_per_section = bars if isinstance(bars, int) and bars >= 1 else 4

    def load_file(self, path: str) -> List[Section]:
        song = MidiParser.parse_file(path)
        identity = SongIdentity.from_path(path)
        sections = self.load_song(song, identity)
        self.storage.add_recent_file(identity.as_file_info())
        return sections

    def load_song(self, song: ParsedSong, identity: SongIdentity) -> List[Section]:
        if not song.tracks:
            raise InputError("MIDI file has no tracks")
        analyzer = SectionAnalyzer(song)
        try:
            sections = analyzer.analyze(self.hand_selection, self.bars_per_section)
        except EmptySelectionError:
            if self.hand_selection == HAND_BOTH:
                raise
            logger.info("%s has no %s-hand notes; loading both hands", song.name or 'Song', self.hand_selection)
            sections = analyzer.analyze(HAND_BOTH, self.bars_per_section)
            self.hand_selection = HAND_BOTH
            self.storage.save_preferences({'selectedHand': HAND_BOTH})
        self.song = song
        self.identity = identity
        self._install(sections)
        return sections

    def set_hand_selection(self, hand_selection: str) -> List[Section]:
        if hand_selection not in HAND_SELECTIONS:
            raise ValueError(f"Unknown hand selection: {hand_selection!r}")
        sections = self._rebuild(hand_selection, self.bars_per_section)
        self.hand_selection = hand_selection
        self.storage.save_preferences({'selectedHand': hand_selection})
        return sections

    def set_bars_per_section(self, bars_per_section: int) -> List[Section]:
        sections = self._rebuild(self.hand_selection, bars_per_section)
        self.bars_per_section = bars_per_section
        self.storage.save_preferences({'barsPerSection': bars_per_section})
        return sections

    def _rebuild(self, hand_selection: str, bars_per_section: int) -> List[Section]:
        if self.song is None:
            return []
        sections = SectionAnalyzer(self.song).analyze(hand_selection, bars_per_section)
        self.player.stop()
        self._install(sections)
        return sections

    def _install(self, sections: List[Section]):
        index = self.tracker.load_song(self.identity, len(sections))
        self.player.set_sections(sections, index)
