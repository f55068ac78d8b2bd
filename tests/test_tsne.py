"""
Tests for the reference torch t-SNE solver.
"""

import math

import numpy as np
import pytest
import torch

from atsne import (
    TSNE,
    Dataset,
    FrameScheduler,
    OptimizerEngine,
    conditional_p,
    dist2_with_limit,
    find_knn,
)
from atsne_model import EmptyInputError, NearestEntry


def cluster_neighbors(points, k=10):
    return find_knn(points, k, lambda p: p.vector, dist2_with_limit)


class TestConditionalP:
    @pytest.mark.parametrize("perplexity", [2.0, 5.0, 8.0])
    def test_entropy_matches_perplexity(self, perplexity):
        rng = np.random.default_rng(1)
        d = rng.uniform(0.1, 3.0, size=(6, 12))
        p = conditional_p(d, perplexity)
        h = -(p * np.log(p)).sum(axis=1)
        np.testing.assert_allclose(h, math.log(perplexity), atol=1e-3)
        np.testing.assert_allclose(p.sum(axis=1), 1.0)

    def test_padding_gets_zero_weight(self):
        d = np.array([[0.5, 1.0, 2.0, np.inf, np.inf]])
        p = conditional_p(d, 2.0)
        assert p[0, 3] == 0.0 and p[0, 4] == 0.0
        assert p[0, :3].sum() == pytest.approx(1.0)


class TestTSNE:
    def test_is_an_optimizer_engine(self):
        assert isinstance(TSNE(), OptimizerEngine)

    def test_step_before_init(self):
        with pytest.raises(RuntimeError):
            TSNE().step()
        assert TSNE().get_solution().size == 0

    def test_empty_init(self):
        with pytest.raises(EmptyInputError):
            TSNE().init_data_dist([])

    @pytest.mark.parametrize("dim", [2, 3])
    def test_solution_layout(self, two_clusters, dim):
        engine = TSNE(epsilon=50.0, perplexity=5.0, dim=dim, seed=0)
        engine.init_data_dist(cluster_neighbors(two_clusters))
        for _ in range(20):
            engine.step()
        y = engine.get_solution()
        assert y.shape == (40 * dim,)
        assert np.isfinite(y).all()
        assert engine.get_dim() == dim

    def test_separates_clusters(self, two_clusters):
        engine = TSNE(epsilon=100.0, perplexity=5.0, dim=2, seed=0)
        engine.init_data_dist(cluster_neighbors(two_clusters))
        for _ in range(300):
            engine.step()
        y = engine.get_solution().reshape(40, 2)
        a, b = y[:20], y[20:]
        spread = max(
            np.linalg.norm(a - a.mean(0), axis=1).mean(),
            np.linalg.norm(b - b.mean(0), axis=1).mean(),
        )
        assert np.linalg.norm(a.mean(0) - b.mean(0)) > spread

    def test_seeded_runs_match(self, two_clusters):
        nearest = cluster_neighbors(two_clusters)
        out = []
        for _ in range(2):
            engine = TSNE(perplexity=5.0, seed=11)
            engine.init_data_dist(nearest)
            for _ in range(5):
                engine.step()
            out.append(engine.get_solution())
        np.testing.assert_array_equal(out[0], out[1])

    def test_perturb_moves_solution(self, two_clusters):
        engine = TSNE(perplexity=5.0, seed=2)
        engine.init_data_dist(cluster_neighbors(two_clusters))
        engine.step()
        before = engine.get_solution()
        engine.perturb()
        assert not np.array_equal(before, engine.get_solution())


class TestSupervision:
    # Ring where every point links to its successor; labels alternate.
    NEAREST = [[NearestEntry((i + 1) % 6, 0.5)] for i in range(6)]
    LABELS = ["x", "y", "x", "y", "x", "y"]

    def engine(self):
        engine = TSNE(perplexity=1.5, seed=0)
        engine.init_data_dist(self.NEAREST)
        return engine

    def test_zero_factor_leaves_p(self):
        engine = self.engine()
        engine.set_supervision(self.LABELS)
        engine.set_supervise_factor(0.0)
        assert engine._p.equal(engine._p_base)

    def test_full_factor_cuts_cross_label_edges(self):
        engine = self.engine()
        engine.set_supervision(self.LABELS)
        engine.set_supervise_factor(1.0)
        assert not engine._p.any()

    def test_unlabeled_points_are_unaffected(self):
        engine = self.engine()
        engine.set_supervision(["x", "?", "x", "?", "x", "?"], unlabeled_class="?")
        engine.set_supervise_factor(1.0)
        assert torch.allclose(engine._p, engine._p_base)

    def test_factor_is_clamped(self):
        engine = self.engine()
        engine.set_supervision(["x", "x", "x", "y", "y", "y"])
        engine.set_supervise_factor(5.0)
        clamped = engine._p.clone()
        engine.set_supervise_factor(1.0)
        assert engine._p.equal(clamped)


class TestDatasetRun:
    def test_end_to_end(self, two_clusters):
        ds = Dataset(two_clusters, seed=0)
        ds.knn_use_gpu = False
        ds.normalize()
        steps = []
        scheduler = FrameScheduler()
        ds.project_tsne(5.0, 50.0, 2, steps.append, scheduler)
        scheduler.run(20)
        assert steps == list(range(1, 21))
        assert ds.nearest_k == 15
        for p in ds.points:
            assert np.isfinite([p.projections["tsne-0"], p.projections["tsne-1"]]).all()
        ds.stop_tsne()
        scheduler.run()
        assert steps[-1] is None
