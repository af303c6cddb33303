from typing import Dict, Iterable, List, Optional

import numpy as np

from .config import RECOGNITION_DISTANCE_THRESHOLD
from .models import UNKNOWN_LABEL, EnrollmentTemplate, IdentityMatch


class IdentityResolver:
    """Nearest-template matcher over enrolled descriptors.

    A person's distance is the mean Euclidean distance between the query and each
    of their enrolled descriptors (all vectors L2-normalized). The closest person
    wins if that mean is below the threshold; otherwise the label is "unknown".
    """

    def __init__(
        self,
        templates: Iterable[EnrollmentTemplate] = (),
        threshold: float = RECOGNITION_DISTANCE_THRESHOLD,
    ):
        self.threshold = threshold
        self.person_ids: List[str] = []
        self.matrices: List[np.ndarray] = []
        self.load(templates)

    def load(self, templates: Iterable[EnrollmentTemplate]) -> None:
        person_ids: List[str] = []
        matrices: List[np.ndarray] = []
        for template in templates:
            if not template.descriptors:
                continue
            matrix = np.vstack(template.descriptors).astype(np.float32)
            norms = np.linalg.norm(matrix, axis=1, keepdims=True)
            person_ids.append(template.person_id)
            matrices.append(matrix / np.clip(norms, 1e-9, None))

        self.person_ids = person_ids
        self.matrices = matrices

    @property
    def enrolled_count(self) -> int:
        return len(self.person_ids)

    def distances(self, descriptor: np.ndarray) -> Dict[str, float]:
        query = self._normalize(descriptor)
        if query is None:
            return {}
        return {
            person_id: float(np.linalg.norm(matrix - query, axis=1).mean())
            for person_id, matrix in zip(self.person_ids, self.matrices)
        }

    def resolve(self, descriptor: np.ndarray) -> IdentityMatch:
        scores = self.distances(descriptor)
        if not scores:
            return IdentityMatch(label=UNKNOWN_LABEL, distance=1.0)

        best_id = min(scores, key=scores.get)
        best = scores[best_id]
        if best < self.threshold:
            return IdentityMatch(label=best_id, distance=best)
        return IdentityMatch(label=UNKNOWN_LABEL, distance=best)

    @staticmethod
    def _normalize(vector: np.ndarray) -> Optional[np.ndarray]:
        query = np.asarray(vector, dtype=np.float32).reshape(-1)
        norm = float(np.linalg.norm(query))
        if norm == 0.0:
            return None
        return query / norm
