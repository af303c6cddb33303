import os
from dataclasses import dataclass
from pathlib import Path


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _csv_env(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    values = tuple(token.strip() for token in raw.split(",") if token.strip())
    return values or default


def _choice_env(name: str, default: str, choices: tuple[str, ...]) -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    return value if value in choices else default


BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("KIOSK_DATA_DIR", str(BASE_DIR / "data")))
LOG_DIR = Path(os.getenv("KIOSK_LOG_DIR", str(BASE_DIR / "logs")))
DB_PATH = DATA_DIR / "kiosk.db"

# Camera settings
CAMERA_INDEX = _int_env("KIOSK_CAMERA_INDEX", 0)
FRAME_WIDTH = _int_env("KIOSK_FRAME_WIDTH", 640)
FRAME_HEIGHT = _int_env("KIOSK_FRAME_HEIGHT", 480)
FRAME_FPS = _int_env("KIOSK_FRAME_FPS", 30)
CAMERA_BACKEND_ORDER = _csv_env("KIOSK_CAMERA_BACKEND_ORDER", ())
TARGET_TICK_FPS = _int_env("KIOSK_TARGET_TICK_FPS", 15)
JPEG_QUALITY = _int_env("KIOSK_JPEG_QUALITY", 78)

# Detector settings
DEVICE = os.getenv("KIOSK_DEVICE", "auto")
DETECTOR_MIN_CONFIDENCE = _float_env("KIOSK_DETECTOR_MIN_CONFIDENCE", 0.5)

# Quality gate: coarse liveness proxy from box size and detector confidence.
MIN_FACE_PX = _int_env("KIOSK_MIN_FACE_PX", 100)
LIVE_SCORE_THRESHOLD = _float_env("KIOSK_LIVE_SCORE_THRESHOLD", 0.85)

# Recognition settings. Distances are Euclidean on L2-normalized descriptors.
RECOGNITION_DISTANCE_THRESHOLD = _float_env("KIOSK_RECOGNITION_DISTANCE_THRESHOLD", 0.6)
DUPLICATE_FACE_DISTANCE_THRESHOLD = _float_env("KIOSK_DUPLICATE_FACE_DISTANCE_THRESHOLD", 0.45)

# Presence tracker timings
MATCH_LOCK_MS = _int_env("KIOSK_MATCH_LOCK_MS", 1000)
GRACE_MS = _int_env("KIOSK_GRACE_MS", 2000)
IDLE_TIMEOUT_MS = _int_env("KIOSK_IDLE_TIMEOUT_MS", 15000)
MATCH_LOCK_SCOPE = _choice_env("KIOSK_MATCH_LOCK_SCOPE", "person", ("person", "global"))
STORAGE_RETRY_LIMIT = _int_env("KIOSK_STORAGE_RETRY_LIMIT", 3)
STORAGE_RETRY_BACKOFF_MS = _int_env("KIOSK_STORAGE_RETRY_BACKOFF_MS", 2000)

# Enrollment settings
ENROLLMENT_SAMPLES = _int_env("KIOSK_ENROLLMENT_SAMPLES", 5)
SAMPLE_EVERY_N_FRAMES = _int_env("KIOSK_SAMPLE_EVERY_N_FRAMES", 6)
CAMERA_READ_FAIL_LIMIT = _int_env("KIOSK_CAMERA_READ_FAIL_LIMIT", 30)

# Feedback
EVENT_LOG_SIZE = _int_env("KIOSK_EVENT_LOG_SIZE", 200)
SHOW_DEBUG_OVERLAY = _bool_env("KIOSK_SHOW_DEBUG_OVERLAY", False)


@dataclass(frozen=True)
class TimingConfig:
    match_lock_ms: int = MATCH_LOCK_MS
    grace_ms: int = GRACE_MS
    idle_timeout_ms: int = IDLE_TIMEOUT_MS
    match_lock_scope: str = MATCH_LOCK_SCOPE
    storage_retry_limit: int = STORAGE_RETRY_LIMIT
    storage_retry_backoff_ms: int = STORAGE_RETRY_BACKOFF_MS
