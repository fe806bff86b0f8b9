# observer/embed/codec.py
from __future__ import annotations

import numpy as np

# little-endian float32, matching what the ingestion side writes
_DTYPE = np.dtype("<f4")


def to_blob(vec) -> bytes:
    arr = np.asarray(vec, dtype=_DTYPE)
    if arr.ndim != 1:
        raise ValueError(f"embedding must be 1-d, got shape {arr.shape}")
    return arr.tobytes(order="C")


def from_blob(b: bytes | None) -> np.ndarray | None:
    if not b:
        return None
    return np.frombuffer(b, dtype=_DTYPE).astype(np.float32)


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """1.0 for identical direction, 0.0 for orthogonal, mismatched or zero vectors."""
    if a is None or b is None or a.shape != b.shape or a.size == 0:
        return 0.0
    na = float(np.linalg.norm(a))
    nb = float(np.linalg.norm(b))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(a, b) / (na * nb))


def normalize_rows(mat: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(mat, axis=1, keepdims=True) + 1e-12
    return mat / norm


def cosine_scores(query: np.ndarray, mat: np.ndarray) -> np.ndarray:
    """Cosine similarity of `query` against every row of `mat`."""
    if mat.shape[0] == 0:
        return np.zeros((0,), dtype=np.float32)
    q = np.asarray(query, dtype=np.float32)
    qn = float(np.linalg.norm(q))
    if qn == 0.0:
        return np.zeros((mat.shape[0],), dtype=np.float32)
    return normalize_rows(mat.astype(np.float32, copy=False)) @ (q / qn)
