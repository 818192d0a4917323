"""All magic numbers and configuration constants."""

ROLES = ("tag", "title_key", "title", "narration")    # spoken in this order
TITLE_ROLES = ("title", "title_key")                 # roles the long-vowel merge targets by default

SCENE_CONTENT = "content"
SCENE_EFFECT = "effect"
SCENE_PLACEHOLDER = "placeholder"

WIDE_SPACE = "\u3000"             # full-width space, a longer pause for ja voices
SENTENCE_COMMA = "、"
SENTENCE_PERIOD = "。"
DOT_WORD = "ドット"                  # spoken "dot" in filename pronunciation
BASE_SPELL_THRESHOLD = 3            # spell bases of at most this many alphanumerics

CHUNK_MAX_LEN = 90                  # chars per speakable chunk
CHUNK_LOOKBACK = 20                 # chars scanned back for a soft break
CHUNK_SEPARATORS = "。．！？?!\n、・：；"
CHUNK_BREAK_CHARS = " 、・：；。．!?？！”）)]"

CANCEL_COOLDOWN_MS = 280            # wait after cancel() before the next speak()
START_WATCHDOG_MS = 2000            # no "start" by then → one recovery attempt
RESUME_PROBE_MS = 350               # grace after resume() before declaring a stall
HARD_TIMEOUT_MIN_MS = 12000
HARD_TIMEOUT_MAX_MS = 90000
HARD_TIMEOUT_PER_CHAR_MS = 260
HARD_TIMEOUT_BASE_MS = 3000
TIMEOUT_GRACE_MS = 1500             # added to the expected duration
EXPECTED_BASE_MS = 1000
CHARS_PER_SECOND = 6.5              # pacing heuristic at rate 1.0
SENTENCE_MARK_MS = 180              # extra per 。．！？!?
QUIET_POLL_MS = 100
HARD_STOP_SETTLE_MS = 280
ABORT_STEP_MS = 60                  # granularity of abortable sleeps
MUTED_WAIT_CAP_MS = 20000           # cap for the no-backend timed wait
MUTED_WAIT_BASE_MS = 800
MUTED_WAIT_PER_CHAR_MS = 100

ADVANCE_MODE = "auto"
ADVANCE_QUIET_MS = 300
ADVANCE_POST_DELAY_MS = 250

EFFECT_DEFAULT_MS = 1200
EFFECT_MAX_MS = 60000

DEFAULT_RATE = 1.4
RATE_MIN = 0.5
RATE_MAX = 2.0
DEFAULT_VOICE = "ja-JP-NanamiNeural"

TTS_RETRY_COUNT = 3                 # max retries per synthesized clip
TTS_RETRY_BASE_DELAY = 1.0         # seconds, doubled on each retry
CLIP_PAUSE_MS = 250                 # silence between clips in an exported track
OUTPUT_BITRATE = "192k"
VERSION = "0.1.0"
