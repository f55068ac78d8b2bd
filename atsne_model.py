"""
atsne_model - Shared foundation for atsne.

Config, error taxonomy, point/metadata data model, the streaming
record parser, tensor and metadata file parsing, metadata column
statistics, sprite image checks and the bookmark State shape.

Tensor files can hold hundreds of thousands of rows, so every text
parser here consumes records from iter_records(), which decodes one
chunk at a time and never holds the whole decoded text.

This module has zero dependency on the embedding engine (atsne.py)
or the command-line entry point (atsne_cli.py).
"""

from __future__ import annotations

import codecs, io, json, logging, math, warnings
from dataclasses import dataclass, asdict, field, fields
import dataclasses
from pathlib import Path
from typing import Any, BinaryIO, Callable, Generator, NamedTuple, Optional, Union

import numpy as np
import yaml
from PIL import Image

logger = logging.getLogger(__name__)

# Maximum number of distinct values tracked per metadata column.
NUM_COLORS_COLOR_MAP = 50
MAX_SPRITE_IMAGE_SIZE_PX = 8192
DEFAULT_CHUNK_SIZE = 1000000

Content = Union[bytes, bytearray, memoryview, BinaryIO]


# ── Errors ────────────────────────────────────────────────────────


class DimensionMismatchError(ValueError):
    """Tensor rows disagree on vector length."""


class DegenerateVectorError(ValueError):
    """Resolved dimensionality is 1 or less."""


class EmptyInputError(ValueError):
    """Centroid or statistics requested over zero points."""


class HardwareComputeFailure(RuntimeError):
    """The accelerated distance kernel failed or is unavailable."""


class MetadataShapeMismatch(ValueError):
    """Metadata record count disagrees with the point count.

    kind is "single-column-header" when a one-column file carries a
    spurious header row, "missing-header" when a multi-column file lacks
    its header row.
    """

    def __init__(self, message: str, kind: str, n_points: int, n_records: int):
        super().__init__(message)
        self.kind = kind
        self.n_points = n_points
        self.n_records = n_records


class OversizedSpriteImage(ValueError):
    def __init__(self, width: Optional[int], height: Optional[int], max_px: int):
        size = "" if width is None else f" of dimensions {width}px x {height}px"
        super().__init__(
            f"Sprite image{size} exceeds maximum dimensions {max_px}px x {max_px}px"
        )
        self.width, self.height, self.max_px = width, height, max_px


# ── Data Model ────────────────────────────────────────────────────

PointMetadata = dict  # column name -> str | float | None


@dataclass
class Point:
    index: int
    vector: np.ndarray
    metadata: PointMetadata = field(default_factory=dict)
    sequence_index: Optional[int] = None
    projections: dict[str, float] = field(default_factory=dict)


@dataclass
class Sequence:
    """Indices into Dataset.points, in chain order."""

    point_indices: list[int] = field(default_factory=list)


class NearestEntry(NamedTuple):
    index: int
    dist: float


@dataclass
class ColumnStats:
    name: str
    is_numeric: bool = True
    too_many_unique_values: bool = False
    min: float = math.inf
    max: float = -math.inf
    unique_entries: Optional[list[dict]] = None


@dataclass
class SpriteMetadata:
    image_path: str
    single_image_dim: tuple[int, int]

    @classmethod
    def from_dict(cls, d: dict) -> SpriteMetadata:
        return cls(d["imagePath"], tuple(d["singleImageDim"]))


@dataclass
class SpriteAndMetadataInfo:
    stats: Optional[list[ColumnStats]] = None
    points_info: Optional[list[PointMetadata]] = None
    sprite_image: Optional[Image.Image] = None
    sprite_metadata: Optional[SpriteMetadata] = None


@dataclass
class EmbeddingInfo:
    """One entry of projector_config.json."""

    tensor_name: str
    tensor_shape: tuple[int, int]
    tensor_path: str = ""
    metadata_path: str = ""
    bookmarks_path: str = ""
    sprite: Optional[SpriteMetadata] = None

    @classmethod
    def from_dict(cls, d: dict) -> EmbeddingInfo:
        sprite = d.get("sprite")
        return cls(
            tensor_name=d["tensorName"],
            tensor_shape=tuple(d.get("tensorShape") or (0, 0)),
            tensor_path=d.get("tensorPath", ""),
            metadata_path=d.get("metadataPath", ""),
            bookmarks_path=d.get("bookmarksPath", ""),
            sprite=SpriteMetadata.from_dict(sprite) if sprite else None,
        )


@dataclass
class ProjectorConfig:
    embeddings: list[EmbeddingInfo]
    model_checkpoint_path: str = ""

    @classmethod
    def from_dict(cls, d: dict) -> ProjectorConfig:
        return cls(
            embeddings=[EmbeddingInfo.from_dict(e) for e in d.get("embeddings", [])],
            model_checkpoint_path=d.get("modelCheckpointPath", ""),
        )

    def embedding(self, name: str) -> EmbeddingInfo:
        for e in self.embeddings:
            if e.tensor_name == name:
                return e
        raise KeyError(f"No embedding named {name!r}")


# ── Bookmark State ────────────────────────────────────────────────


@dataclass
class State:
    """Serializable snapshot of the projector, as stored in bookmarks."""

    label: str = ""
    is_selected: bool = False
    selected_projection: Optional[str] = None
    data_set_dimensions: tuple[int, int] = (0, 0)
    tsne_iteration: int = 0
    tsne_perplexity: float = 0
    tsne_learning_rate: float = 0
    tsne_is_3d: bool = True
    pca_component_dimensions: list[int] = field(default_factory=list)
    custom_selected_search_by_metadata_option: str = ""
    custom_x_left_text: str = ""
    custom_x_left_regex: bool = False
    custom_x_right_text: str = ""
    custom_x_right_regex: bool = False
    custom_y_up_text: str = ""
    custom_y_up_regex: bool = False
    custom_y_down_text: str = ""
    custom_y_down_regex: bool = False
    projections: list[dict[str, float]] = field(default_factory=list)
    filtered_points: list[int] = field(default_factory=list)
    selected_points: list[int] = field(default_factory=list)
    camera_def: Any = None
    selected_color_option_name: str = ""
    force_categorical_coloring: bool = False
    selected_label_option: str = ""

    # Bookmark files use the projector's camelCase keys.
    _KEYS = {
        "label": "label",
        "isSelected": "is_selected",
        "selectedProjection": "selected_projection",
        "dataSetDimensions": "data_set_dimensions",
        "tSNEIteration": "tsne_iteration",
        "tSNEPerplexity": "tsne_perplexity",
        "tSNELearningRate": "tsne_learning_rate",
        "tSNEis3d": "tsne_is_3d",
        "pcaComponentDimensions": "pca_component_dimensions",
        "customSelectedSearchByMetadataOption": "custom_selected_search_by_metadata_option",
        "customXLeftText": "custom_x_left_text",
        "customXLeftRegex": "custom_x_left_regex",
        "customXRightText": "custom_x_right_text",
        "customXRightRegex": "custom_x_right_regex",
        "customYUpText": "custom_y_up_text",
        "customYUpRegex": "custom_y_up_regex",
        "customYDownText": "custom_y_down_text",
        "customYDownRegex": "custom_y_down_regex",
        "projections": "projections",
        "filteredPoints": "filtered_points",
        "selectedPoints": "selected_points",
        "cameraDef": "camera_def",
        "selectedColorOptionName": "selected_color_option_name",
        "forceCategoricalColoring": "force_categorical_coloring",
        "selectedLabelOption": "selected_label_option",
    }

    @classmethod
    def from_dict(cls, d: dict) -> State:
        kw = {cls._KEYS[k]: v for k, v in d.items() if k in cls._KEYS}
        if "data_set_dimensions" in kw:
            kw["data_set_dimensions"] = tuple(kw["data_set_dimensions"])
        return cls(**kw)

    def to_dict(self) -> dict:
        return {k: getattr(self, attr) for k, attr in self._KEYS.items()}


def get_projection_components(
    projection: str, components: list
) -> tuple[Optional[str], Optional[str], Optional[str]]:
    if len(components) > 3:
        raise ValueError("components length must be <= 3")
    out = [None, None, None]
    prefix = "linear" if projection == "custom" else projection
    for i, c in enumerate(components):
        if c is None:
            continue
        out[i] = f"{prefix}-{c}"
    return tuple(out)


def state_get_accessor_dimensions(state: State) -> list:
    if state.selected_projection == "pca":
        return list(state.pca_component_dimensions)
    if state.selected_projection == "tsne":
        return [0, 1, 2] if state.tsne_is_3d else [0, 1]
    if state.selected_projection == "custom":
        return ["x", "y"]
    raise ValueError(f"Unexpected projection: {state.selected_projection!r}")


# ── Config ─────────────────────────────────────────────────────────


@dataclass
class Config:
    data_dir: str
    output_dir: str
    perplexity: float
    learning_rate: float
    tsne_dim: int
    max_iterations: int
    server_url: str = ""
    run: str = ""
    tensor_name: str = ""
    sample_size: int = 10000
    knn_block_size: int = 256
    knn_use_gpu: bool = True
    device: str = "cuda"
    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_unique_values: int = NUM_COLORS_COLOR_MAP
    max_sprite_px: int = MAX_SPRITE_IMAGE_SIZE_PX
    supervise_column: str = ""
    supervise_input: str = ""
    supervise_factor: float = 0.0
    seed: Optional[int] = None
    log_interval: int = 100
    request_timeout: int = 30
    export_format: str = "tsv"

    def save(self, path: str):
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(asdict(self), f, default_flow_style=False, sort_keys=False)

    @classmethod
    def load(cls, path: str) -> Config:
        if not Path(path).exists():
            raise FileNotFoundError(f"Config not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        valid = {f.name for f in fields(cls)}
        required = {
            f.name
            for f in fields(cls)
            if f.default is dataclasses.MISSING
            and f.default_factory is dataclasses.MISSING
        }
        filtered = {k: v for k, v in data.items() if k in valid}
        missing = required - set(filtered)
        if missing:
            raise ValueError(f"Missing config fields: {missing}")
        return cls(**filtered)


# ── Streaming Parser ──────────────────────────────────────────────


def _chunks_of(content: Content, chunk_size: int) -> Generator[bytes, None, None]:
    if hasattr(content, "read"):
        while True:
            chunk = content.read(chunk_size)
            if not chunk:
                return
            yield chunk
    else:
        view = memoryview(content)
        for start in range(0, len(view), chunk_size):
            yield view[start : start + chunk_size].tobytes()


def iter_records(
    content: Content,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    delim: str = "\n",
) -> Generator[str, None, None]:
    """Yield delimiter-separated records from a byte buffer or binary file.

    Decodes one chunk at a time. The trailing partial record of each chunk
    is carried into the next one, so records split across chunk boundaries
    (and multi-byte characters split across them) come out whole. A final
    record with no trailing delimiter is still yielded.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    carry = ""
    for chunk in _chunks_of(content, chunk_size):
        parts = (carry + decoder.decode(chunk)).split(delim)
        carry = parts.pop()
        yield from parts
    carry += decoder.decode(b"", final=True)
    if carry:
        parts = carry.split(delim)
        tail = parts.pop()
        yield from parts
        if tail:
            yield tail


def stream_parse(
    content: Content,
    callback: Callable[[str], None],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    delim: str = "\n",
):
    for record in iter_records(content, chunk_size, delim):
        callback(record)


# ── Tensor Parsing ────────────────────────────────────────────────


def _as_number(value) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return None if math.isnan(value) else float(value)
    try:
        x = float(value)
    except ValueError:
        return None
    return None if math.isnan(x) else x


def parse_tensors(
    content: Content,
    value_delim: str = "\t",
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> list[Point]:
    """Parse a delimited tensor file into Points.

    A non-numeric first field, or one field more than the width set by the
    first row, marks the first field as the point's label.
    """
    data: list[Point] = []
    num_dim = None
    for line in iter_records(content, chunk_size):
        line = line.strip()
        if not line:
            continue
        row = line.split(value_delim)
        point = Point(index=len(data), vector=np.empty(0, np.float32))
        if _as_number(row[0]) is None or num_dim == len(row) - 1:
            point.metadata["label"] = row[0]
            values = row[1:]
        else:
            values = row
        try:
            point.vector = np.array([float(v) for v in values], dtype=np.float32)
        except ValueError as e:
            raise ValueError(f"Parsing failed at row {len(data)}: {e}") from e
        data.append(point)
        if num_dim is None:
            num_dim = len(point.vector)
        if num_dim != len(point.vector):
            raise DimensionMismatchError(
                f"Parsing failed. Vector dimensions do not match: row "
                f"{point.index} has {len(point.vector)}, expected {num_dim}"
            )
        if num_dim <= 1:
            raise DegenerateVectorError(
                "Parsing failed. Found a vector with only one dimension?"
            )
    logger.info(f"[Parse] {len(data):,} tensors, dim={num_dim}")
    return data


def parse_tensors_from_float32(data: Union[bytes, np.ndarray], dim: int) -> list[Point]:
    """Little-endian float32 buffer -> Points whose vectors are row views."""
    if dim <= 1:
        raise DegenerateVectorError(f"Tensor dimensionality must exceed 1, got {dim}")
    flat = (
        np.asarray(data, dtype=np.float32).ravel()
        if isinstance(data, np.ndarray)
        else np.frombuffer(data, dtype="<f4")
    )
    if flat.size % dim:
        raise ValueError(f"Buffer of {flat.size} floats is not a multiple of dim={dim}")
    matrix = flat.astype(np.float32).reshape(-1, dim)
    return [Point(index=i, vector=matrix[i]) for i in range(matrix.shape[0])]


# ── Metadata ──────────────────────────────────────────────────────


def analyze_metadata(
    column_names: list[str],
    points_metadata: list[PointMetadata],
    max_unique: int = NUM_COLORS_COLOR_MAP,
) -> list[ColumnStats]:
    """Per-column numeric range and categorical cardinality.

    Numeric-looking values are converted to floats in place.
    """
    if not points_metadata:
        raise EmptyInputError("Cannot compute metadata statistics over zero points")
    stats = [ColumnStats(name=name) for name in column_names]
    counts: list[dict[str, int]] = [{} for _ in column_names]

    for metadata in points_metadata:
        for col, name in enumerate(column_names):
            value = metadata.get(name)
            if value is None:
                continue
            st, seen = stats[col], counts[col]
            if not st.too_many_unique_values:
                key = str(value)
                seen[key] = seen.get(key, 0) + 1
                if len(seen) > max_unique:
                    st.too_many_unique_values = True
            x = _as_number(value)
            if x is None:
                st.is_numeric = False
            else:
                metadata[name] = x
                st.min = min(st.min, x)
                st.max = max(st.max, x)

    for st, seen in zip(stats, counts):
        if not st.too_many_unique_values:
            st.unique_entries = [{"label": k, "count": n} for k, n in seen.items()]
    return stats


def parse_metadata(
    content: Content,
    delim: str = "\t",
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    max_unique: int = NUM_COLORS_COLOR_MAP,
) -> SpriteAndMetadataInfo:
    points_metadata: list[PointMetadata] = []
    column_names = ["label"]
    first = True
    for line in iter_records(content, chunk_size):
        if not line.strip():
            continue
        if first:
            first = False
            # Without a delimiter the first row is a value, not a header.
            if delim in line:
                column_names = line.split(delim)
                continue
        values = line.split(delim)
        points_metadata.append(
            {
                name: (values[i] if i < len(values) and values[i] != "" else None)
                for i, name in enumerate(column_names)
            }
        )
    logger.info(
        f"[Metadata] {len(points_metadata):,} rows, columns={column_names}"
    )
    return SpriteAndMetadataInfo(
        points_info=points_metadata,
        stats=analyze_metadata(column_names, points_metadata, max_unique),
    )


# ── Sprites ───────────────────────────────────────────────────────


def check_sprite_image(
    data: bytes, max_px: int = MAX_SPRITE_IMAGE_SIZE_PX
) -> Image.Image:
    """Open a sprite sheet lazily and reject it when either side exceeds max_px.

    Pillow's decompression-bomb guard fires inside Image.open, before the
    size is known, so it is reported as an oversized sprite too.
    """
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", Image.DecompressionBombWarning)
            image = Image.open(io.BytesIO(data))
    except Image.DecompressionBombError as e:
        raise OversizedSpriteImage(None, None, max_px) from e
    width, height = image.size
    if width > max_px or height > max_px:
        raise OversizedSpriteImage(width, height, max_px)
    return image


def load_bookmarks(content: Union[str, bytes]) -> list[State]:
    return [State.from_dict(d) for d in json.loads(content or "[]")]
