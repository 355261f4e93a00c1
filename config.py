# Shared configuration and constants.
from pathlib import Path

APP_NAME = "Piano Section Practice"
APP_DIR = Path.home() / ".piano_practice"
STORE_FILENAME = "storage.json"
STORAGE_PREFIX = "pianoPractice_"

BASE_BPM = 120.0          # transport rate base; tempo_scale is a fraction of this
DEFAULT_TEMPO_BPM = 120.0
DEFAULT_BEATS_PER_MEASURE = 4
MIN_NOTE_DURATION = 0.001  # seconds

TICK_INTERVAL_MS = 2       # drives Player.tick
POLL_INTERVAL_MS = 50      # display-only position sampling
SESSION_TICK_MS = 1000     # SessionAccumulator sampling period

BARS_PER_SECTION_RANGE = (1, 16)
TEMPO_SCALE_RANGE = (0.25, 1.5)
CLICK_NOTE_DURATION = 0.25  # an eighth note at the base tempo
CLICK_NOTE_VELOCITY = 0.8

RECENT_FILES_LIMIT = 10

HAND_BOTH = 'both'
HAND_LEFT = 'left'
HAND_RIGHT = 'right'
HAND_SELECTIONS = (HAND_BOTH, HAND_LEFT, HAND_RIGHT)

DEFAULT_PREFERENCES = {
    'playbackRate': 1.0,
    'volume': 75,
    'selectedHand': HAND_BOTH,
    'barsPerSection': 4,
    'isLooping': False,
    'theme': 'light',
}
