import numpy as np
import pytest

from panostitch.core.bundle_adjuster import (
    BundleAdjuster, Observation, observations_from, total_reprojection_error
)
from panostitch.core.errors import ConvergenceFailure
from panostitch.core.geometry import apply_transform
from panostitch.core.graph import StitchGraph
from panostitch.core.types import PairEstimate, PairMatches, Transform


def translation(tx, ty=0.0):
    return np.array([[1.0, 0.0, tx], [0.0, 1.0, ty], [0.0, 0.0, 1.0]])


TRUTH = {
    0: np.eye(3),
    1: np.array([[1.0, 0.01, 150.0], [-0.01, 1.0, 4.0], [0.0, 0.0, 1.0]]),
    2: np.array([[1.0, 0.02, 300.0], [-0.02, 1.0, 9.0], [1e-5, 0.0, 1.0]]),
}


def make_observations(noise=0.3, seed=0):
    rng = np.random.default_rng(seed)
    observations = []
    for i, j in ((0, 1), (1, 2), (0, 2)):
        src = rng.uniform([0, 0], [400, 300], (60, 2))
        dst = apply_transform(np.linalg.inv(TRUTH[j]) @ TRUTH[i], src)
        observations.append(Observation(i, j, src, dst + rng.normal(0, noise, dst.shape)))
    return observations


def drifted():
    return {
        0: np.eye(3),
        1: translation(3.0, -2.0) @ TRUTH[1],
        2: translation(-6.0, 5.0) @ TRUTH[2],
    }


def test_loop_closure_reduces_error():
    observations = make_observations()
    result = BundleAdjuster().adjust([0, 1, 2], 0, drifted(), observations)

    assert result.converged
    assert result.error is None
    assert result.final_error < 0.5 * result.initial_error
    assert result.initial_error == pytest.approx(total_reprojection_error(drifted(), observations))
    assert np.allclose(result.transforms[0], np.eye(3))
    corners = np.array([[0.0, 0.0], [399.0, 299.0], [200.0, 150.0]])
    for k in (1, 2):
        assert np.allclose(apply_transform(result.transforms[k], corners),
                           apply_transform(TRUTH[k], corners), atol=1.0)


def test_similarity_model_and_robust_loss():
    observations = make_observations()
    initial = {k: translation(m[0, 2] + 2.0, m[1, 2]) for k, m in TRUTH.items()}
    initial[0] = np.eye(3)
    adjuster = BundleAdjuster(model='similarity', loss='huber')
    result = adjuster.adjust([0, 1, 2], 0, initial, observations)
    assert result.converged
    assert result.final_error <= result.initial_error
    assert result.transforms[1][2, :2].tolist() == [0.0, 0.0]


def test_iteration_cap_falls_back_to_initial_transforms():
    initial = drifted()
    result = BundleAdjuster(max_iterations=1).adjust([0, 1, 2], 0, initial, make_observations())

    assert not result.converged
    assert result.final_error == result.initial_error
    for k in initial:
        assert np.allclose(result.transforms[k], initial[k])
    assert isinstance(result.error, ConvergenceFailure)
    assert result.error.images == (0, 1, 2)


def test_nothing_to_adjust():
    result = BundleAdjuster().adjust([4], 4, {4: np.eye(3)}, [])
    assert result.converged
    assert result.reason == "nothing to adjust"
    assert result.final_error == 0.0


def test_observations_use_inliers_only():
    src = np.arange(12, dtype=float).reshape(6, 2)
    mask = np.array([True, False, True, True, False, True])
    estimate = PairEstimate(PairMatches(0, 1, [], src, src + 1),
                            Transform(np.eye(3), True, 4, mask, 0.1))
    [obs] = observations_from([estimate])
    assert (obs.image_i, obs.image_j) == (0, 1)
    assert len(obs) == 4
    assert np.array_equal(obs.dst, src[mask] + 1)


def test_adjustment_improves_on_chained_spanning_tree():
    observations = make_observations(noise=0.5, seed=3)
    inliers = {(0, 1): 60, (1, 2): 55, (0, 2): 30}
    estimates = []
    for obs in observations:
        pair = (obs.image_i, obs.image_j)
        # Pairwise estimates carry a small bias that chaining accumulates
        matrix = translation(2.0, -1.0) @ np.linalg.inv(TRUTH[obs.image_j]) @ TRUTH[obs.image_i]
        estimates.append(PairEstimate(PairMatches(obs.image_i, obs.image_j, [], obs.src, obs.dst),
                                      Transform(matrix, True, inliers[pair], None, 0.5)))

    graph = StitchGraph.build(range(3), estimates, min_inliers=20)
    [component] = graph.components()
    reference = graph.reference_for(component)
    chained = graph.chain_transforms(component, reference)
    edges = observations_from(graph.component_edges(component))

    assert reference == 1
    result = BundleAdjuster().adjust(component, reference, chained, edges)
    assert result.converged
    assert result.final_error < total_reprojection_error(chained, edges)
    assert np.allclose(result.transforms[reference], np.eye(3))
