"""
atsne - Nearest-neighbor engine and embedding driver.

Neighbors: points → unit vectors → K-nearest (CPU symmetric pruning, or
           batched matmul on an accelerator with CPU fallback)
Embedding: neighbors → optimizer engine → cooperative step loop →
           per-point projection cache

This module has zero dependency on the command-line entry point
(atsne_cli.py). It depends on atsne_model for the data model, parsers
and error taxonomy.
"""

from __future__ import annotations

import heapq, json, logging, math, re
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, runtime_checkable

import numpy as np
import pandas as pd
import requests
import torch

from atsne_model import (
    DEFAULT_CHUNK_SIZE,
    MAX_SPRITE_IMAGE_SIZE_PX,
    NUM_COLORS_COLOR_MAP,
    DimensionMismatchError,
    EmptyInputError,
    HardwareComputeFailure,
    MetadataShapeMismatch,
    NearestEntry,
    OversizedSpriteImage,
    Point,
    ProjectorConfig,
    Sequence,
    SpriteAndMetadataInfo,
    SpriteMetadata,
    State,
    check_sprite_image,
    load_bookmarks,
    parse_metadata,
    parse_tensors,
    parse_tensors_from_float32,
)

log = logging.getLogger(__name__)

Vector = np.ndarray
Accessor = Callable[[Any], Vector]

# Keeps per-block similarity matrices to a few tens of MB for 10K points.
OPTIMAL_GPU_BLOCK_SIZE = 256
TSNE_SAMPLE_SIZE = 10000
# "__next__" is deprecated in favor of "__seq_next__".
SEQUENCE_METADATA_ATTRS = ("__next__", "__seq_next__")


# ── Vector Math ────────────────────────────────────────────────────


def sub(a: Vector, b: Vector) -> Vector:
    return np.subtract(a, b, dtype=np.float32)


def dot(a: Vector, b: Vector) -> float:
    return float(np.dot(a, b))


def norm2(a: Vector) -> float:
    """Squared L2 norm."""
    return float(np.dot(a, a))


def unit(a: Vector) -> Vector:
    """Normalize in place. The zero vector is returned unchanged."""
    n = math.sqrt(norm2(a))
    if n > 0:
        a /= n
    return a


def dist2(a: Vector, b: Vector) -> float:
    d = np.subtract(a, b, dtype=np.float32)
    return float(np.dot(d, d))


def dist(a: Vector, b: Vector) -> float:
    return math.sqrt(dist2(a, b))


def dist2_with_limit(a: Vector, b: Vector, limit: float, step: int = 64) -> float:
    """Squared distance, or -1 as soon as the partial sum exceeds limit."""
    total = 0.0
    for s in range(0, len(a), step):
        d = np.subtract(a[s : s + step], b[s : s + step], dtype=np.float32)
        total += float(np.dot(d, d))
        if total > limit:
            return -1.0
    return total


def cos_dist_norm(a: Vector, b: Vector) -> float:
    """Cosine distance between two vectors already of unit norm."""
    return 1.0 - dot(a, b)


def cos_dist_norm_with_limit(a: Vector, b: Vector, limit: float = math.inf) -> float:
    """cos_dist_norm clamped at zero. limit is ignored; this never aborts."""
    # Rounding can push identical unit vectors slightly below zero, which
    # the pruning search would read as an abort.
    return max(cos_dist_norm(a, b), 0.0)


def cos_dist(a: Vector, b: Vector) -> float:
    den = math.sqrt(norm2(a) * norm2(b))
    if den == 0:
        return 1.0
    return 1.0 - dot(a, b) / den


def centroid(points: list, accessor: Accessor) -> Vector:
    if len(points) == 0:
        raise EmptyInputError("Cannot compute the centroid of zero points")
    acc = np.zeros(len(accessor(points[0])), dtype=np.float64)
    for p in points:
        acc += accessor(p)
    return (acc / len(points)).astype(np.float32)


def to_matrix(points: list, accessor: Accessor) -> np.ndarray:
    if not points:
        return np.empty((0, 0), np.float32)
    return np.stack([accessor(p) for p in points]).astype(np.float32, copy=False)


# ── Top-K Selection ────────────────────────────────────────────────


class KMin:
    """Keeps the k smallest-key items seen so far.

    Max-heap on key (stored negated). Among equal keys the earliest
    insertion survives, and a key equal to the current largest is
    rejected once the heap is full.
    """

    def __init__(self, k: int):
        self.k = k
        self._heap: list[tuple[float, int, Any]] = []
        self._seq = 0

    def add(self, key: float, value: Any):
        self._seq += 1
        item = (-key, -self._seq, value)
        if len(self._heap) < self.k:
            heapq.heappush(self._heap, item)
        elif self._heap and key < -self._heap[0][0]:
            heapq.heapreplace(self._heap, item)

    def size(self) -> int:
        return len(self._heap)

    def largest_key(self) -> Optional[float]:
        """Worst retained key, or None until the heap holds k items."""
        if len(self._heap) < self.k:
            return None
        # A zero-capacity heap is full and accepts nothing.
        return -self._heap[0][0] if self._heap else -math.inf

    def get_min_k_items(self) -> list:
        return [v for _, _, v in sorted(self._heap, key=lambda t: (-t[0], -t[1]))]


# ── Nearest Neighbors ─────────────────────────────────────────────


def find_knn(
    points: list,
    k: int,
    accessor: Accessor,
    dist_fn: Callable[[Vector, Vector, float], float],
    logger: logging.Logger = None,
) -> list[list[NearestEntry]]:
    """K nearest neighbors of every point, computed on the CPU.

    Each unordered pair is visited once and offered to both points. The
    distance function gets the looser of the two current bounds and may
    return a negative value to signal it stopped early.
    """
    logger = logger or log
    n = len(points)
    vectors = [accessor(p) for p in points]
    kmin = [KMin(k) for _ in range(n)]

    for i in range(n):
        a, kmin_a = vectors[i], kmin[i]
        for j in range(i + 1, n):
            kmin_b = kmin[j]
            limit_i, limit_j = kmin_a.largest_key(), kmin_b.largest_key()
            limit = (
                math.inf
                if limit_i is None or limit_j is None
                else max(limit_i, limit_j)
            )
            d = dist_fn(a, vectors[j], limit)
            if d >= 0:
                kmin_a.add(d, NearestEntry(j, d))
                kmin_b.add(d, NearestEntry(i, d))

    logger.info(f"[KNN] cpu: {n:,} points, k={k}")
    return [km.get_min_k_items() for km in kmin]


def find_knn_of_point(
    points: list,
    point_index: int,
    k: int,
    accessor: Accessor,
    distance: Callable[[Vector, Vector], float],
) -> list[NearestEntry]:
    kmin = KMin(k)
    a = accessor(points[point_index])
    for i, p in enumerate(points):
        if i == point_index:
            continue
        d = distance(a, accessor(p))
        kmin.add(d, NearestEntry(i, d))
    return kmin.get_min_k_items()


@runtime_checkable
class DistanceKernel(Protocol):
    """Batched similarity kernel used by find_knn_gpu_cosine.

    Every failure is raised as HardwareComputeFailure.
    """

    def load(self, matrix: np.ndarray) -> None: ...
    def scores(self, start: int, stop: int) -> np.ndarray: ...
    def release(self) -> None: ...


class TorchKernel:
    """Row-block dot products against the full matrix on a torch device."""

    def __init__(self, device: str = "cuda", dtype: torch.dtype = torch.float32):
        self.device = torch.device(device)
        self.dtype = dtype
        self._big: Optional[torch.Tensor] = None

    def load(self, matrix: np.ndarray):
        try:
            self._big = torch.from_numpy(np.ascontiguousarray(matrix)).to(
                device=self.device, dtype=self.dtype
            )
        except (RuntimeError, AssertionError) as e:
            raise HardwareComputeFailure(f"{self.device}: {e}") from e

    def scores(self, start: int, stop: int) -> np.ndarray:
        if self._big is None:
            raise HardwareComputeFailure("kernel used before load()")
        try:
            with torch.no_grad():
                block = self._big[start:stop] @ self._big.T
                return block.float().cpu().numpy()
        except RuntimeError as e:
            raise HardwareComputeFailure(f"{self.device}: {e}") from e

    def release(self):
        self._big = None
        if self.device.type == "cuda" and torch.cuda.is_available():
            torch.cuda.empty_cache()


def knn_gpu_enabled(device: str = "cuda", enabled: bool = True) -> bool:
    """Whether the accelerated KNN path should be tried at all."""
    if not enabled:
        return False
    dev = torch.device(device)
    if dev.type == "cuda":
        return torch.cuda.is_available()
    if dev.type == "mps":
        return torch.backends.mps.is_available()
    return False


def _row_top_k(row: np.ndarray, k: int) -> list[NearestEntry]:
    kk = min(k, len(row) - 1)
    if kk <= 0:
        return []
    cand = np.argpartition(row, kk - 1)[:kk]
    kmin = KMin(k)
    for j in np.sort(cand):
        d = float(row[j])
        kmin.add(d, NearestEntry(int(j), d))
    return kmin.get_min_k_items()


def find_knn_gpu_cosine(
    points: list,
    k: int,
    accessor: Accessor,
    kernel: DistanceKernel = None,
    block_size: int = OPTIMAL_GPU_BLOCK_SIZE,
    progress: Callable[[float], None] = None,
    logger: logging.Logger = None,
) -> list[list[NearestEntry]]:
    """K nearest neighbors by cosine distance via batched matmul.

    Computes A @ A_block.T one row-block at a time instead of the full
    N x N matrix. If the kernel fails at any point the partial result is
    dropped and the whole call reruns on the CPU.
    """
    logger = logger or log
    n = len(points)
    if n == 0:
        return []
    kernel = kernel or TorchKernel()
    matrix = to_matrix(points, accessor)
    num_pieces = math.ceil(n / block_size)
    m, modulo = divmod(n, num_pieces)
    nearest: list[list[NearestEntry]] = [[] for _ in range(n)]
    failure: Optional[HardwareComputeFailure] = None

    try:
        kernel.load(matrix)
        offset = 0
        for piece in range(num_pieces):
            b = m + 1 if piece < modulo else m
            dists = 1.0 - np.asarray(kernel.scores(offset, offset + b), np.float32)
            for r in range(b):
                i = offset + r
                dists[r, i] = np.inf
                nearest[i] = _row_top_k(dists[r], k)
            offset += b
            if progress:
                progress((piece + 1) / num_pieces)
    except HardwareComputeFailure as e:
        failure = e
    finally:
        kernel.release()

    if failure is not None:
        logger.warning(f"[KNN] accelerated path failed, reverting to CPU: {failure}")
        return find_knn(points, k, accessor, cos_dist_norm_with_limit, logger)
    logger.info(f"[KNN] batched: {n:,} points, k={k}, {num_pieces} blocks")
    return nearest


def find_knn_auto(
    points: list,
    k: int,
    accessor: Accessor,
    device: str = "cuda",
    use_gpu: bool = True,
    block_size: int = OPTIMAL_GPU_BLOCK_SIZE,
    logger: logging.Logger = None,
) -> list[list[NearestEntry]]:
    if knn_gpu_enabled(device, use_gpu):
        return find_knn_gpu_cosine(
            points, k, accessor, TorchKernel(device), block_size, logger=logger
        )
    return find_knn(points, k, accessor, cos_dist_norm_with_limit, logger)


# ── Optimizer Engine ──────────────────────────────────────────────


@runtime_checkable
class OptimizerEngine(Protocol):
    """Structural interface of the solver driven by EmbeddingRun."""

    def init_data_dist(self, nearest: list[list[NearestEntry]]) -> None: ...
    def step(self) -> None: ...
    def get_solution(self) -> np.ndarray: ...
    def perturb(self) -> None: ...
    def get_dim(self) -> int: ...
    def set_supervision(self, labels: list[str], unlabeled_class: str = "") -> None: ...
    def set_supervise_factor(self, weight: float) -> None: ...


def conditional_p(dists: np.ndarray, perplexity: float, tol=1e-5, steps=64) -> np.ndarray:
    """Row-wise Gaussian affinities over neighbor distances.

    Binary-searches each row's precision so the row entropy matches
    log(perplexity). Non-finite entries are padding and get zero weight.
    """
    d = dists.astype(np.float64)
    valid = np.isfinite(d)
    dmin = np.where(valid, d, np.inf).min(axis=1, keepdims=True)
    dz = np.where(valid, d - np.where(np.isfinite(dmin), dmin, 0), 0.0)
    n = d.shape[0]
    target = math.log(perplexity)
    beta = np.ones(n)
    lo, hi = np.full(n, -np.inf), np.full(n, np.inf)
    p = np.zeros_like(d)

    for _ in range(steps):
        w = np.exp(-dz * beta[:, None]) * valid
        p = w / np.maximum(w.sum(axis=1, keepdims=True), 1e-300)
        h = -(p * np.log(np.maximum(p, 1e-300))).sum(axis=1)
        if np.all(np.abs(h - target) < tol):
            break
        up = h > target
        lo = np.where(up, beta, lo)
        hi = np.where(up, hi, beta)
        beta = np.where(
            up,
            np.where(np.isinf(hi), beta * 2, (beta + hi) / 2),
            np.where(np.isinf(lo), beta / 2, (beta + lo) / 2),
        )
    return p


class TSNE:
    """Reference t-SNE solver on torch.

    Sparse symmetric P from the neighbor lists, exact Student-t repulsion
    in row blocks, early exaggeration and gain-adapted momentum.
    """

    def __init__(
        self,
        epsilon: float = 10.0,
        perplexity: float = 30.0,
        dim: int = 2,
        device: str = "cpu",
        seed: Optional[int] = None,
        block_size: int = 1024,
    ):
        self.epsilon = epsilon
        self.perplexity = perplexity
        self.dim = dim
        self.device = torch.device(device)
        self.block_size = block_size
        self._gen = torch.Generator(device="cpu")
        if seed is None:
            self._gen.seed()
        else:
            self._gen.manual_seed(seed)
        self.iter = 0
        self._n = 0
        self._labels: Optional[list[str]] = None
        self._unlabeled = ""
        self._factor = 0.0
        self._rows = self._cols = self._p_base = self._p = None
        self.Y: Optional[torch.Tensor] = None

    @torch.no_grad()
    def init_data_dist(self, nearest: list[list[NearestEntry]]):
        n = len(nearest)
        if n == 0:
            raise EmptyInputError("Cannot initialize t-SNE with zero points")
        k = max((len(nn) for nn in nearest), default=0)
        idx = np.zeros((n, max(k, 1)), np.int64)
        d = np.full((n, max(k, 1)), np.inf, np.float32)
        for i, nn in enumerate(nearest):
            for c, e in enumerate(nn):
                idx[i, c], d[i, c] = e.index, e.dist
        mask = np.isfinite(d)
        cond = conditional_p(d, self.perplexity)

        rows = np.repeat(np.arange(n), idx.shape[1])[mask.ravel()]
        p = torch.sparse_coo_tensor(
            torch.from_numpy(np.stack([rows, idx[mask]])),
            torch.from_numpy(cond[mask].astype(np.float32)),
            (n, n),
        )
        p = (p + p.t()).coalesce()
        vals = p.values()
        vals = vals / vals.sum().clamp(min=1e-12)
        self._rows = p.indices()[0].to(self.device)
        self._cols = p.indices()[1].to(self.device)
        self._p_base = vals.to(self.device)
        self._n = n
        self._apply_supervision()

        self.Y = (torch.randn(n, self.dim, generator=self._gen) * 1e-4).to(self.device)
        self._gains = torch.ones_like(self.Y)
        self._ystep = torch.zeros_like(self.Y)
        self.iter = 0

    def _apply_supervision(self):
        if self._p_base is None:
            return
        p = self._p_base
        w = min(max(self._factor, 0.0), 1.0)
        if self._labels is not None and len(self._labels) == self._n and w > 0:
            codes, _ = pd.factorize(pd.Series(self._labels, dtype=object))
            known = np.array([l not in ("", self._unlabeled) for l in self._labels])
            codes = torch.from_numpy(codes.astype(np.int64)).to(self.device)
            known = torch.from_numpy(known).to(self.device)
            both = known[self._rows] & known[self._cols]
            same = codes[self._rows] == codes[self._cols]
            scale = torch.ones_like(p)
            scale[both & same] = 1.0 + w
            scale[both & ~same] = 1.0 - w
            p = p * scale
            p = p / p.sum().clamp(min=1e-12)
        self._p = p

    @torch.no_grad()
    def step(self):
        if self.Y is None:
            raise RuntimeError("init_data_dist() must run before step()")
        self.iter += 1
        Y, n = self.Y, self.Y.shape[0]
        exag = 4.0 if self.iter < 100 else 1.0

        diff = Y[self._rows] - Y[self._cols]
        q = 1.0 / (1.0 + (diff * diff).sum(dim=1))
        attr = torch.zeros_like(Y).index_add_(
            0, self._rows, (exag * self._p * q).unsqueeze(1) * diff
        )

        rep = torch.empty_like(Y)
        z = Y.new_zeros(())
        for s in range(0, n, self.block_size):
            yb = Y[s : s + self.block_size]
            w = 1.0 / (1.0 + torch.cdist(yb, Y).pow(2))
            r = torch.arange(yb.shape[0], device=Y.device)
            w[r, r + s] = 0.0
            z += w.sum()
            w2 = w * w
            rep[s : s + self.block_size] = w2.sum(dim=1, keepdim=True) * yb - w2 @ Y
        grad = 4.0 * (attr - rep / z.clamp(min=1e-12))

        same_sign = torch.sign(grad) == torch.sign(self._ystep)
        self._gains = torch.where(same_sign, self._gains * 0.8, self._gains + 0.2)
        self._gains.clamp_(min=0.01)
        momentum = 0.5 if self.iter < 250 else 0.8
        self._ystep = momentum * self._ystep - self.epsilon * self._gains * grad
        Y += self._ystep
        Y -= Y.mean(dim=0, keepdim=True)

    def get_solution(self) -> np.ndarray:
        if self.Y is None:
            return np.empty(0, np.float32)
        return self.Y.detach().cpu().numpy().astype(np.float32).ravel()

    @torch.no_grad()
    def perturb(self, scale: float = 0.05):
        if self.Y is None:
            return
        noise = torch.randn(self.Y.shape, generator=self._gen).to(self.device)
        self.Y += noise * self.Y.std().clamp(min=1e-4) * scale

    def get_dim(self) -> int:
        return self.dim

    def set_supervision(self, labels: list[str], unlabeled_class: str = ""):
        self._labels = list(labels) if labels else None
        self._unlabeled = unlabeled_class or ""
        self._apply_supervision()

    def set_supervise_factor(self, weight: float):
        self._factor = float(weight)
        self._apply_supervision()


# ── Scheduling ────────────────────────────────────────────────────


class FrameScheduler:
    """FIFO frame queue standing in for a host render loop.

    Calling the scheduler enqueues a callback for the next frame; run()
    executes frames until the queue drains or max_frames is reached.
    """

    def __init__(self):
        self._pending: deque[Callable[[], None]] = deque()

    def __call__(self, fn: Callable[[], None]):
        self._pending.append(fn)

    def __len__(self) -> int:
        return len(self._pending)

    def run(self, max_frames: Optional[int] = None) -> int:
        frames = 0
        while self._pending and (max_frames is None or frames < max_frames):
            self._pending.popleft()()
            frames += 1
        return frames


# ── Dataset ───────────────────────────────────────────────────────


def get_sequence_next_point_index(metadata: dict) -> Optional[int]:
    for attr in SEQUENCE_METADATA_ATTRS:
        value = metadata.get(attr)
        if value is None or value == "":
            continue
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return None
    return None


def get_search_predicate(
    query: str, in_regex_mode: bool, field_name: str
) -> Callable[[Point], bool]:
    if in_regex_mode:
        rx = re.compile(query, re.IGNORECASE)
        return lambda p: bool(rx.search(str(p.metadata.get(field_name))))
    q = query.lower()
    return lambda p: q in str(p.metadata.get(field_name)).lower()


def _label_str(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class RunState(Enum):
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass(frozen=True)
class TSNEParams:
    perplexity: float
    learning_rate: float
    dim: int

    @property
    def k(self) -> int:
        return int(math.floor(3 * self.perplexity))


class EmbeddingRun:
    """One optimization run: live engine handle plus its state machine.

    Each tick does at most one engine step and reschedules itself. The
    stop flag is checked at the top of every tick; a stopped run reports
    a final None to the step callback and is not rescheduled.
    """

    def __init__(
        self,
        dataset: Dataset,
        engine: OptimizerEngine,
        params: TSNEParams,
        sampled_indices: list[int],
        step_callback: Callable[[Optional[int]], None],
        scheduler: Callable[[Callable[[], None]], None],
    ):
        self.dataset = dataset
        self.engine: Optional[OptimizerEngine] = engine
        self.params = params
        self.sampled_indices = sampled_indices
        self.step_callback = step_callback
        self.scheduler = scheduler
        self.state = RunState.RUNNING
        self.iteration = 0
        self._finished = False

    @property
    def active(self) -> bool:
        return self.state is not RunState.STOPPED

    def pause(self):
        if self.state is RunState.RUNNING:
            self.state = RunState.PAUSED

    def resume(self):
        if self.state is RunState.PAUSED:
            self.state = RunState.RUNNING

    def stop(self):
        self.state = RunState.STOPPED
        self.engine = None

    def publish(self):
        """Copy the engine's current solution into the sampled points."""
        result = self.engine.get_solution()
        d = self.engine.get_dim()
        points = self.dataset.points
        for i, index in enumerate(self.sampled_indices):
            proj = points[index].projections
            proj["tsne-0"] = float(result[i * d])
            proj["tsne-1"] = float(result[i * d + 1])
            if d == 3:
                proj["tsne-2"] = float(result[i * d + 2])

    def tick(self):
        if self.state is RunState.STOPPED:
            if self._finished:
                return
            self._finished = True
            if self.dataset._run is self:
                self.dataset.projections["tsne"] = False
            self.step_callback(None)
            return
        if self.state is RunState.RUNNING:
            self.engine.step()
            self.publish()
            self.iteration += 1
            self.dataset.projections["tsne"] = True
            self.step_callback(self.iteration)
        self.scheduler(self.tick)


class Dataset:
    """Point collection plus cached neighbor table and embedding run.

    Vectors are mutated in place by normalize(), so subsets are always
    deep copies of the source points.
    """

    def __init__(
        self,
        points: list[Point],
        sprite_and_metadata_info: SpriteAndMetadataInfo = None,
        seed: Optional[int] = None,
        logger: logging.Logger = None,
    ):
        if not points:
            raise EmptyInputError("Dataset needs at least one point")
        d = len(points[0].vector)
        for p in points:
            if len(p.vector) != d:
                raise DimensionMismatchError(
                    f"Point {p.index} has dimension {len(p.vector)}, expected {d}"
                )
        self.points = points
        self.logger = logger or log
        self.seed = seed
        self.shuffled_data_indices: list[int] = (
            np.random.default_rng(seed).permutation(len(points)).tolist()
        )
        self.sequences = self._compute_sequences(points)
        self.dim = (len(points), d)
        self.sprite_and_metadata_info = sprite_and_metadata_info

        # Which projections have been computed, by projection name.
        self.projections: dict[str, bool] = {}
        self.nearest: list[list[NearestEntry]] = []
        self.nearest_k = 0
        self.supervise_factor = 0.0
        self.supervise_labels: list[str] = []
        self.supervise_input = ""

        self.sample_size = TSNE_SAMPLE_SIZE
        self.knn_device = "cuda"
        self.knn_use_gpu = True
        self.knn_block_size = OPTIMAL_GPU_BLOCK_SIZE
        self.engine_device = "cpu"
        self._run: Optional[EmbeddingRun] = None

    def _compute_sequences(self, points: list[Point]) -> list[Sequence]:
        n = len(points)
        seen = np.zeros(n, dtype=bool)
        index_to_sequence: dict[int, Sequence] = {}
        sequences: list[Sequence] = []
        for i in range(n):
            if seen[i]:
                continue
            seen[i] = True
            nxt = get_sequence_next_point_index(points[i].metadata)
            if nxt is None:
                continue
            if nxt in index_to_sequence:
                seq = index_to_sequence[nxt]
                seq.point_indices.insert(0, i)
                index_to_sequence[i] = seq
                continue
            seq = Sequence()
            index_to_sequence[i] = seq
            sequences.append(seq)
            current, walked = i, set()
            while 0 <= current < n and current not in walked:
                walked.add(current)
                seq.point_indices.append(current)
                nxt = get_sequence_next_point_index(points[current].metadata)
                if nxt is None:
                    break
                if 0 <= nxt < n:
                    seen[nxt] = True
                current = nxt
        for si, seq in enumerate(sequences):
            for idx in seq.point_indices:
                points[idx].sequence_index = si
        return sequences

    # ── Derived views ──

    @property
    def tsne_iteration(self) -> int:
        return self._run.iteration if self._run else 0

    @property
    def has_tsne_run(self) -> bool:
        return self._run is not None and self._run.active

    @property
    def tsne_should_pause(self) -> bool:
        return self._run is not None and self._run.state is RunState.PAUSED

    @property
    def tsne_should_stop(self) -> bool:
        return not self.has_tsne_run

    def projection_can_be_rendered(self, projection: str) -> bool:
        if projection != "tsne":
            return True
        return self.tsne_iteration > 0

    def get_subset(self, subset: Optional[list[int]] = None) -> Dataset:
        chosen = [self.points[i] for i in subset] if subset else self.points
        points = [
            Point(index=p.index, vector=p.vector.copy(), metadata=dict(p.metadata))
            for p in chosen
        ]
        return Dataset(points, self.sprite_and_metadata_info, self.seed, self.logger)

    def normalize(self):
        """Shift all points to the centroid and make them unit norm."""
        c = centroid(self.points, lambda p: p.vector)
        for p in self.points:
            p.vector = sub(p.vector, c)
            if norm2(p.vector) > 0:
                unit(p.vector)

    def project_linear(self, direction: Vector, label: str):
        self.projections[label] = True
        for p in self.points:
            p.projections[label] = dot(p.vector, direction)

    def find_neighbors(
        self, point_index: int, dist_fn: Callable[[Vector, Vector], float], num_nn: int
    ) -> list[NearestEntry]:
        neighbors = find_knn_of_point(
            self.points, point_index, num_nn, lambda p: p.vector, dist_fn
        )
        return neighbors[:num_nn]

    def query(self, query: str, in_regex_mode: bool, field_name: str) -> list[int]:
        predicate = get_search_predicate(query, in_regex_mode, field_name)
        return [i for i, p in enumerate(self.points) if predicate(p)]

    def projections_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [{"index": p.index, **p.metadata, **p.projections} for p in self.points]
        )

    # ── Embedding ──

    def _sampled_indices(self) -> list[int]:
        return self.shuffled_data_indices[: min(self.sample_size, TSNE_SAMPLE_SIZE)]

    def _find_knn(self, points: list[Point], k: int) -> list[list[NearestEntry]]:
        return find_knn_auto(
            points,
            k,
            lambda p: p.vector,
            device=self.knn_device,
            use_gpu=self.knn_use_gpu,
            block_size=self.knn_block_size,
            logger=self.logger,
        )

    def project_tsne(
        self,
        perplexity: float,
        learning_rate: float,
        tsne_dim: int,
        step_callback: Callable[[Optional[int]], None],
        scheduler: Callable[[Callable[[], None]], None] = None,
        knn: Callable[[list[Point], int], list[list[NearestEntry]]] = None,
        engine_factory: Callable[..., OptimizerEngine] = None,
    ) -> EmbeddingRun:
        """Start an optimization run and schedule its first tick."""
        if tsne_dim not in (2, 3):
            raise ValueError(f"tsne_dim must be 2 or 3, got {tsne_dim}")
        if self.has_tsne_run:
            self.stop_tsne()

        params = TSNEParams(perplexity, learning_rate, tsne_dim)
        k = params.k
        sampled = self._sampled_indices()
        if engine_factory is None:
            engine = TSNE(
                epsilon=learning_rate,
                perplexity=perplexity,
                dim=tsne_dim,
                device=self.engine_device,
                seed=self.seed,
            )
        else:
            engine = engine_factory(
                epsilon=learning_rate, perplexity=perplexity, dim=tsne_dim
            )
        engine.set_supervision(self.supervise_labels, self.supervise_input)
        engine.set_supervise_factor(self.supervise_factor)

        if self.nearest and k == self.nearest_k and len(self.nearest) == len(sampled):
            self.logger.info(f"[TSNE] reusing nearest neighbors (k={k})")
        else:
            sampled_points = [self.points[i] for i in sampled]
            self.nearest = (knn or self._find_knn)(sampled_points, k)
            self.nearest_k = k

        engine.init_data_dist(self.nearest)
        self.logger.info(
            f"[TSNE] start: {len(sampled):,} points, perplexity={perplexity} "
            f"lr={learning_rate} dim={tsne_dim}"
        )
        run = EmbeddingRun(
            self,
            engine,
            params,
            sampled,
            step_callback,
            scheduler if scheduler is not None else FrameScheduler(),
        )
        self._run = run
        run.scheduler(run.tick)
        return run

    def pause_tsne(self):
        if self._run:
            self._run.pause()

    def resume_tsne(self):
        if self._run:
            self._run.resume()

    def stop_tsne(self):
        if self._run:
            self._run.stop()

    def perturb_tsne(self):
        if self.has_tsne_run and self._run.engine is not None:
            self._run.engine.perturb()
            self._run.publish()

    def set_supervision(
        self, supervise_column: Optional[str], supervise_input: Optional[str] = None
    ):
        if supervise_column is not None:
            self.supervise_labels = [
                _label_str(self.points[i].metadata.get(supervise_column))
                for i in self._sampled_indices()
            ]
        if supervise_input is not None:
            self.supervise_input = supervise_input
        if self.has_tsne_run:
            self._run.engine.set_supervision(self.supervise_labels, self.supervise_input)

    def set_supervise_factor(self, supervise_factor: Optional[float]):
        if supervise_factor is None:
            return
        self.supervise_factor = supervise_factor
        if self.has_tsne_run:
            self._run.engine.set_supervise_factor(supervise_factor)

    # ── Metadata ──

    def merge_metadata(self, metadata: SpriteAndMetadataInfo) -> bool:
        """Attach parsed metadata to the points by position.

        Raises MetadataShapeMismatch for the two count mismatches caused by
        a header row problem; other count mismatches are logged and merged.
        """
        n = len(self.points)
        if metadata and metadata.points_info is not None and len(metadata.points_info) != n:
            m = len(metadata.points_info)
            ncols = len(metadata.stats) if metadata.stats else 0
            msg = (
                f"Number of tensors ({n}) do not match the number of lines "
                f"in metadata ({m})."
            )
            if ncols == 1 and n + 1 == m:
                raise MetadataShapeMismatch(
                    msg + " Single column metadata should not have a header row.",
                    "single-column-header",
                    n,
                    m,
                )
            if ncols > 1 and n - 1 == m:
                raise MetadataShapeMismatch(
                    msg + " Multi-column metadata should have a header row "
                    "with column labels.",
                    "missing-header",
                    n,
                    m,
                )
            self.logger.warning(f"[Metadata] {msg}")

        self.sprite_and_metadata_info = metadata
        if not metadata or metadata.points_info is None:
            return False
        for i, m in enumerate(metadata.points_info[:n]):
            self.points[i].metadata = m
        self.sequences = self._compute_sequences(self.points)
        return True


# ── Data Providers ────────────────────────────────────────────────

CONFIG_FILE = "projector_config.json"
# Row cap requested from a projector server.
LIMIT_NUM_POINTS = 100000


@runtime_checkable
class DataProvider(Protocol):
    def list_runs(self) -> list[str]: ...
    def get_config(self, run: str) -> ProjectorConfig: ...
    def get_tensor(self, run: str, tensor_name: str) -> Dataset: ...
    def get_sprite_and_metadata(self, run: str, tensor_name: str) -> SpriteAndMetadataInfo: ...
    def get_bookmarks(self, run: str, tensor_name: str) -> list[State]: ...


def attach_sprite(
    info: SpriteAndMetadataInfo,
    image_bytes: bytes,
    sprite: SpriteMetadata,
    max_px: int = MAX_SPRITE_IMAGE_SIZE_PX,
    logger: logging.Logger = None,
) -> SpriteAndMetadataInfo:
    """Attach a sprite sheet unless it is oversized; metadata survives either way."""
    try:
        info.sprite_image = check_sprite_image(image_bytes, max_px)
        info.sprite_metadata = sprite
    except OversizedSpriteImage as e:
        (logger or log).error(f"[Sprite] {e}")
    return info


class LocalDataProvider:
    """Runs are sub-directories of root holding a projector_config.json."""

    def __init__(
        self,
        root: str,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_unique: int = NUM_COLORS_COLOR_MAP,
        max_sprite_px: int = MAX_SPRITE_IMAGE_SIZE_PX,
        seed: Optional[int] = None,
        logger: logging.Logger = None,
    ):
        self.root = Path(root)
        self.chunk_size = chunk_size
        self.max_unique = max_unique
        self.max_sprite_px = max_sprite_px
        self.seed = seed
        self.logger = logger or log

    def _run_dir(self, run: str) -> Path:
        return self.root / run

    def list_runs(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return [
            d.name
            for d in sorted(self.root.iterdir())
            if d.is_dir() and (d / CONFIG_FILE).exists()
        ]

    def get_config(self, run: str) -> ProjectorConfig:
        path = self._run_dir(run) / CONFIG_FILE
        if not path.exists():
            raise FileNotFoundError(f"Projector config not found: {path}")
        with open(path, encoding="utf-8") as f:
            return ProjectorConfig.from_dict(json.load(f))

    def get_tensor(self, run: str, tensor_name: str) -> Dataset:
        info = self.get_config(run).embedding(tensor_name)
        path = self._run_dir(run) / info.tensor_path
        self.logger.info(f"[Parse] tensors from {path}")
        if path.suffix == ".bytes":
            points = parse_tensors_from_float32(path.read_bytes(), info.tensor_shape[1])
        else:
            with open(path, "rb") as f:
                points = parse_tensors(f, chunk_size=self.chunk_size)
        return Dataset(points, seed=self.seed, logger=self.logger)

    def get_sprite_and_metadata(self, run: str, tensor_name: str) -> SpriteAndMetadataInfo:
        info = self.get_config(run).embedding(tensor_name)
        result = SpriteAndMetadataInfo()
        if info.metadata_path:
            with open(self._run_dir(run) / info.metadata_path, "rb") as f:
                result = parse_metadata(
                    f, chunk_size=self.chunk_size, max_unique=self.max_unique
                )
        if info.sprite and info.sprite.image_path:
            data = (self._run_dir(run) / info.sprite.image_path).read_bytes()
            attach_sprite(result, data, info.sprite, self.max_sprite_px, self.logger)
        return result

    def get_bookmarks(self, run: str, tensor_name: str) -> list[State]:
        info = self.get_config(run).embedding(tensor_name)
        if not info.bookmarks_path:
            return []
        path = self._run_dir(run) / info.bookmarks_path
        return load_bookmarks(path.read_text(encoding="utf-8"))


class ServerDataProvider:
    """Reads runs from a projector HTTP server."""

    def __init__(
        self,
        base_url: str,
        timeout: int = 30,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_unique: int = NUM_COLORS_COLOR_MAP,
        max_sprite_px: int = MAX_SPRITE_IMAGE_SIZE_PX,
        seed: Optional[int] = None,
        logger: logging.Logger = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._session = requests.Session()
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.max_unique = max_unique
        self.max_sprite_px = max_sprite_px
        self.seed = seed
        self.logger = logger or log

    def _get(self, route: str, **params) -> requests.Response:
        r = self._session.get(
            f"{self._base_url}/{route}", params=params, timeout=self.timeout
        )
        r.raise_for_status()
        return r

    def list_runs(self) -> list[str]:
        return self._get("runs").json()

    def get_config(self, run: str) -> ProjectorConfig:
        return ProjectorConfig.from_dict(self._get("info", run=run).json())

    def get_tensor(self, run: str, tensor_name: str) -> Dataset:
        info = self.get_config(run).embedding(tensor_name)
        r = self._get("tensor", run=run, name=tensor_name, num_rows=LIMIT_NUM_POINTS)
        points = parse_tensors_from_float32(r.content, info.tensor_shape[1])
        self.logger.info(f"[Parse] {len(points):,} tensors from server")
        return Dataset(points, seed=self.seed, logger=self.logger)

    def get_sprite_and_metadata(self, run: str, tensor_name: str) -> SpriteAndMetadataInfo:
        info = self.get_config(run).embedding(tensor_name)
        result = SpriteAndMetadataInfo()
        if info.metadata_path:
            r = self._get(
                "metadata", run=run, name=tensor_name, num_rows=LIMIT_NUM_POINTS
            )
            result = parse_metadata(
                r.content, chunk_size=self.chunk_size, max_unique=self.max_unique
            )
        if info.sprite and info.sprite.image_path:
            r = self._get("sprite_image", run=run, name=tensor_name)
            attach_sprite(result, r.content, info.sprite, self.max_sprite_px, self.logger)
        return result

    def get_bookmarks(self, run: str, tensor_name: str) -> list[State]:
        info = self.get_config(run).embedding(tensor_name)
        if not info.bookmarks_path:
            return []
        return load_bookmarks(self._get("bookmarks", run=run, name=tensor_name).text)

    def close(self):
        self._session.close()
