from typing import List, Optional

import cv2
import numpy as np
import torch
import torch.nn.functional as f
import torchvision.models as models
from torchvision.models import ResNet18_Weights

from .config import DETECTOR_MIN_CONFIDENCE, DEVICE
from .exceptions import ConfigurationError, DetectionTransientError
from .models import Detection, Rect

try:
    import mediapipe as mp
except Exception:  # pragma: no cover - runtime dependency guard
    mp = None


def resolve_device(requested: str = DEVICE) -> str:
    if requested == "auto":
        return "cuda" if torch.cuda.is_available() else "cpu"
    return requested


class FaceEngine:
    """Detection source: finds the most prominent face in a frame and describes it.

    Detection runs on MediaPipe; the descriptor is an L2-normalized ResNet-18
    embedding of a square, illumination-balanced crop around the face.
    """

    def __init__(
        self,
        device: str = DEVICE,
        min_confidence: float = DETECTOR_MIN_CONFIDENCE,
    ):
        if mp is None:
            raise ConfigurationError("mediapipe is required. Install the project dependencies first.")

        self.device = torch.device(resolve_device(device))
        self.min_confidence = min_confidence

        if self.device.type == "cuda":
            torch.backends.cudnn.benchmark = True

        try:
            self.detector = mp.solutions.face_detection.FaceDetection(
                model_selection=0,
                min_detection_confidence=min_confidence,
            )

            backbone = models.resnet18(weights=ResNet18_Weights.DEFAULT)
            backbone.fc = torch.nn.Identity()
            self.embedder = backbone.eval().to(self.device)

            self.mean = torch.tensor([0.485, 0.456, 0.406], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
            self.std = torch.tensor([0.229, 0.224, 0.225], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
            self.clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
        except Exception as exc:
            raise ConfigurationError(f"Failed to initialize face models: {exc}") from exc

    def close(self) -> None:
        self.detector.close()

    def detect(self, frame: np.ndarray) -> Optional[Detection]:
        try:
            rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
            result = self.detector.process(rgb)
        except Exception as exc:
            raise DetectionTransientError(f"Face detection failed: {exc}") from exc

        if not result.detections:
            return None

        h, w = frame.shape[:2]
        best: Optional[tuple[Rect, float]] = None
        for det in result.detections:
            score = float(det.score[0]) if det.score else 0.0
            if score < self.min_confidence:
                continue

            rel = det.location_data.relative_bounding_box
            x1 = max(0, int(rel.xmin * w))
            y1 = max(0, int(rel.ymin * h))
            x2 = min(w, x1 + int(rel.width * w))
            y2 = min(h, y1 + int(rel.height * h))
            if x2 <= x1 or y2 <= y1:
                continue

            box = Rect(x=x1, y=y1, width=x2 - x1, height=y2 - y1)
            if best is None or box.area > best[0].area:
                best = (box, score)

        if best is None:
            return None

        box, score = best
        crop = self._extract_square_crop(rgb, box)
        if crop.size == 0:
            return None

        try:
            descriptor = self._embed([crop])[0]
        except Exception as exc:
            raise DetectionTransientError(f"Descriptor extraction failed: {exc}") from exc

        return Detection(box=box, quality_score=score, descriptor=descriptor)

    def _embed(self, crops: List[np.ndarray]) -> np.ndarray:
        processed = []
        for crop in crops:
            tensor = torch.from_numpy(self._preprocess_crop(crop)).permute(2, 0, 1).float() / 255.0
            processed.append(tensor)

        batch = torch.stack(processed, dim=0).to(self.device)
        batch = (batch - self.mean) / self.std
        with torch.inference_mode():
            raw = self.embedder(batch)
            normed = f.normalize(raw.float(), p=2, dim=1)
        return normed.detach().cpu().numpy().astype(np.float32)

    @staticmethod
    def _extract_square_crop(rgb: np.ndarray, box: Rect) -> np.ndarray:
        h, w = rgb.shape[:2]
        side = int(max(box.width, box.height) * 1.05)
        cx = int(box.x + box.width * 0.5)
        cy = int(box.y + box.height * 0.5)

        sx1 = max(0, cx - side // 2)
        sy1 = max(0, cy - side // 2)
        sx2 = min(w, sx1 + side)
        sy2 = min(h, sy1 + side)
        if sx2 <= sx1 or sy2 <= sy1:
            return np.empty((0, 0, 3), dtype=rgb.dtype)
        return rgb[sy1:sy2, sx1:sx2]

    def _preprocess_crop(self, crop: np.ndarray) -> np.ndarray:
        interpolation = cv2.INTER_CUBIC if min(crop.shape[:2]) < 224 else cv2.INTER_AREA
        resized = cv2.resize(crop, (224, 224), interpolation=interpolation)

        # Equalize luma only, then fade the corners towards the mean colour.
        ycrcb = cv2.cvtColor(resized, cv2.COLOR_RGB2YCrCb)
        y_channel, cr_channel, cb_channel = cv2.split(ycrcb)
        y_channel = self.clahe.apply(y_channel)
        balanced = cv2.cvtColor(
            cv2.merge([y_channel, cr_channel, cb_channel]),
            cv2.COLOR_YCrCb2RGB,
        )

        mask = np.zeros((224, 224), dtype=np.float32)
        cv2.ellipse(mask, (112, 112), (84, 100), 0, 0, 360, 1.0, -1)
        mask = cv2.GaussianBlur(mask, (0, 0), sigmaX=6.0, sigmaY=6.0)[..., None]

        balanced_f = balanced.astype(np.float32)
        mean_color = balanced_f.mean(axis=(0, 1), keepdims=True)
        focused = (balanced_f * mask) + (mean_color * (1.0 - mask))
        return np.clip(focused, 0.0, 255.0).astype(np.uint8)
