from .config import LIVE_SCORE_THRESHOLD, MIN_FACE_PX
from .models import Detection


def is_live_quality(
    detection: Detection,
    min_face_px: int = MIN_FACE_PX,
    live_score_threshold: float = LIVE_SCORE_THRESHOLD,
) -> bool:
    """Coarse per-frame liveness proxy.

    Small boxes are distant or background faces (or a photo held far away);
    low detector confidence usually means a partial or blurred face. There is no
    blink or motion challenge here, so this is not anti-spoofing.
    """
    box = detection.box
    if box.width < min_face_px or box.height < min_face_px:
        return False
    return float(detection.quality_score) > live_score_threshold
