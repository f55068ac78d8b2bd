"""
Tests for Config loading and the bookmark State helpers.
"""

import pytest
import yaml

from atsne_model import (
    Config,
    EmbeddingInfo,
    ProjectorConfig,
    State,
    get_projection_components,
    load_bookmarks,
    state_get_accessor_dimensions,
)

REQUIRED = dict(
    data_dir="data",
    output_dir="out",
    perplexity=30.0,
    learning_rate=10.0,
    tsne_dim=2,
    max_iterations=500,
)


class TestConfig:
    def test_round_trip(self, tmp_path):
        path = tmp_path / "nested" / "config.yaml"
        config = Config(**REQUIRED, sample_size=123, seed=5)
        config.save(str(path))
        loaded = Config.load(str(path))
        assert loaded == config

    def test_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump(REQUIRED))
        config = Config.load(str(path))
        assert config.sample_size == 10000
        assert config.knn_block_size == 256
        assert config.max_unique_values == 50
        assert config.max_sprite_px == 8192
        assert config.export_format == "tsv"

    def test_missing_field(self, tmp_path):
        path = tmp_path / "config.yaml"
        partial = {k: v for k, v in REQUIRED.items() if k != "perplexity"}
        path.write_text(yaml.dump(partial))
        with pytest.raises(ValueError, match="perplexity"):
            Config.load(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Config.load(str(tmp_path / "absent.yaml"))

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({**REQUIRED, "colour_scheme": "dark"}))
        assert Config.load(str(path)).perplexity == 30.0


class TestProjectorConfig:
    def test_from_dict(self):
        config = ProjectorConfig.from_dict(
            {
                "embeddings": [
                    {"tensorName": "a", "tensorShape": [10, 4], "tensorPath": "a.tsv"},
                    {"tensorName": "b"},
                ],
                "modelCheckpointPath": "ckpt",
            }
        )
        assert config.model_checkpoint_path == "ckpt"
        assert config.embedding("a").tensor_shape == (10, 4)
        assert config.embedding("b") == EmbeddingInfo("b", (0, 0))
        with pytest.raises(KeyError):
            config.embedding("c")


class TestState:
    def test_round_trip_keys(self):
        state = State.from_dict(
            {"label": "x", "tSNEIteration": 40, "selectedPoints": [1, 2], "unknown": 1}
        )
        assert state.tsne_iteration == 40
        assert state.selected_points == [1, 2]
        d = state.to_dict()
        assert d["tSNEIteration"] == 40
        assert "unknown" not in d
        assert State.from_dict(d) == state

    def test_load_bookmarks_empty(self):
        assert load_bookmarks("") == []
        assert load_bookmarks(b"[]") == []

    @pytest.mark.parametrize(
        "projection,is_3d,pca,expected",
        [
            ("pca", True, [0, 2, 5], [0, 2, 5]),
            ("tsne", True, [], [0, 1, 2]),
            ("tsne", False, [], [0, 1]),
            ("custom", True, [], ["x", "y"]),
        ],
    )
    def test_accessor_dimensions(self, projection, is_3d, pca, expected):
        state = State(
            selected_projection=projection,
            tsne_is_3d=is_3d,
            pca_component_dimensions=pca,
        )
        assert state_get_accessor_dimensions(state) == expected

    def test_accessor_dimensions_unknown(self):
        with pytest.raises(ValueError):
            state_get_accessor_dimensions(State(selected_projection="umap"))


class TestProjectionComponents:
    def test_tsne(self):
        assert get_projection_components("tsne", [0, 1, None]) == (
            "tsne-0",
            "tsne-1",
            None,
        )

    def test_custom_maps_to_linear(self):
        assert get_projection_components("custom", ["x", "y"]) == (
            "linear-x",
            "linear-y",
            None,
        )

    def test_too_many(self):
        with pytest.raises(ValueError):
            get_projection_components("pca", [0, 1, 2, 3])
