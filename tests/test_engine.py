import pytest
import torch

import torch_ekf
from torch_ekf import (
    DimensionMismatch,
    KalmanEngine,
    LinearDynamicsModel,
    LinearObservationModel,
    SingularInnovationCovariance,
    SingularPredictedCovariance,
    StateEstimate,
)


def _spd_matrix(dim: int, batch: tuple[int, ...] = ()) -> torch.Tensor:
    # Construct a symmetric positive definite covariance.
    cov = torch.randn(*batch, dim, dim)
    return cov @ cov.mT + 1e-2 * torch.eye(dim)


def random_engine(dim_x: int, dim_z: int) -> KalmanEngine:
    return KalmanEngine(
        LinearDynamicsModel(torch.randn(dim_x, dim_x), _spd_matrix(dim_x)),
        LinearObservationModel(torch.randn(dim_z, dim_x), _spd_matrix(dim_z)),
    )


def _scalar(estimate: StateEstimate) -> tuple[float, float]:
    return estimate.state.item(), estimate.covariance.item()


def test_random_walk_exact_values(random_walk: KalmanEngine):
    prior = StateEstimate(torch.zeros(1, 1, dtype=torch.float64), torch.ones(1, 1, dtype=torch.float64))
    measures = torch.ones(3, 1, 1, dtype=torch.float64)

    result = random_walk.filter(prior, measures)

    # Gains are 1/2, 1/3 and 1/4
    expected = [(1 / 2, 1 / 2), (2 / 3, 1 / 3), (3 / 4, 1 / 4)]
    for estimate, (state, covariance) in zip(result.filtered, expected):
        assert _scalar(estimate) == pytest.approx((state, covariance), abs=1e-12)

    # Without process noise, prediction keeps the previous posterior
    assert _scalar(result.predicted[0]) == (0.0, 1.0)
    for k in range(3):
        assert _scalar(result.predicted[k + 1]) == _scalar(result.filtered[k])


def test_random_walk_exact_gains(random_walk: KalmanEngine):
    prior = StateEstimate(torch.zeros(1, 1, dtype=torch.float64), torch.ones(1, 1, dtype=torch.float64))
    measures = torch.ones(3, 1, 1, dtype=torch.float64)

    result = random_walk.filter(prior, measures)

    measurement_matrix = random_walk.observation.measurement_matrix
    for k, expected in enumerate([1 / 2, 1 / 3, 1 / 4]):
        innovation = random_walk.project(result.predicted[k])
        gain = result.predicted[k].covariance @ measurement_matrix.mT @ torch.linalg.inv(innovation.covariance)
        assert gain.item() == pytest.approx(expected, abs=1e-12)


def test_random_walk_smoothing_uses_all_observations(random_walk: KalmanEngine):
    prior = StateEstimate(torch.zeros(1, 1, dtype=torch.float64), torch.ones(1, 1, dtype=torch.float64))
    measures = torch.ones(3, 1, 1, dtype=torch.float64)

    result = random_walk.filter(prior, measures)
    smoothed = random_walk.smooth(result.filtered, result.predicted)

    # A constant hidden state: every smoothed estimate is the final posterior
    for estimate in smoothed:
        assert _scalar(estimate) == pytest.approx((3 / 4, 1 / 4), abs=1e-12)


def test_filter_output_lengths():
    length = 7
    engine = random_engine(3, 2)
    prior = StateEstimate(torch.randn(3, 1), _spd_matrix(3))

    result = engine.filter(prior, torch.randn(length, 2, 1))
    smoothed = engine.smooth(result.filtered, result.predicted)

    assert len(result.filtered) == length
    assert len(result.predicted) == length + 1
    assert len(smoothed) == length
    assert result.log_likelihood.shape == ()


def test_filter_matches_manual_steps():
    engine = random_engine(2, 1)
    prior = StateEstimate(torch.randn(2, 1), _spd_matrix(2))
    measures = torch.randn(2, 1, 1)

    result = engine.filter(prior, measures)

    first = engine.update(prior, measures[0])
    second = engine.update(engine.predict(first), measures[1])

    assert torch.allclose(result.filtered[0].state, first.state)
    assert torch.allclose(result.filtered[1].state, second.state)
    assert torch.allclose(result.filtered[1].covariance, second.covariance)
    assert torch.allclose(result.predicted[2].covariance, engine.predict(second).covariance)


def test_filter_accepts_a_list_of_measures():
    engine = random_engine(2, 2)
    prior = StateEstimate(torch.randn(2, 1), _spd_matrix(2))
    measures = torch.randn(4, 2, 1)

    from_tensor = engine.filter(prior, measures)
    from_list = engine.filter(prior, list(measures))

    assert torch.allclose(from_tensor.filtered[-1].state, from_list.filtered[-1].state)


def test_prior_is_copied():
    engine = random_engine(2, 1)
    prior = StateEstimate(torch.randn(2, 1), _spd_matrix(2))

    result = engine.filter(prior, torch.randn(3, 1, 1))
    prior.state.add_(10.0)

    assert not torch.allclose(result.predicted[0].state, prior.state)


def test_smoother_boundary_is_exact():
    engine = random_engine(3, 2)
    prior = StateEstimate(torch.randn(3, 1), _spd_matrix(3))

    result = engine.filter(prior, torch.randn(10, 2, 1))
    smoothed = engine.smooth(result.filtered, result.predicted)

    assert torch.equal(smoothed[-1].state, result.filtered[-1].state)
    assert torch.equal(smoothed[-1].covariance, result.filtered[-1].covariance)
    assert smoothed[-1] == result.filtered[-1]
    assert smoothed[-1].state is not result.filtered[-1].state
    assert smoothed[0] != result.filtered[0]


def test_single_observation_round_trip():
    engine = random_engine(2, 2)
    prior = StateEstimate(torch.randn(2, 1), _spd_matrix(2))

    result = engine.filter(prior, torch.randn(1, 2, 1))
    smoothed = engine.smooth(result.filtered, result.predicted)

    assert len(smoothed) == 1
    assert torch.equal(smoothed[0].state, result.filtered[0].state)
    assert torch.equal(smoothed[0].covariance, result.filtered[0].covariance)


def test_empty_sequence():
    engine = random_engine(2, 1)
    prior = StateEstimate(torch.randn(2, 1), _spd_matrix(2))

    result = engine.filter(prior, torch.empty(0, 1, 1))

    assert result.filtered == []
    assert len(result.predicted) == 1
    assert engine.smooth(result.filtered, result.predicted) == []


def test_degenerate_model_raises_singular_innovation():
    zero = torch.zeros(1, 1, dtype=torch.float64)
    observation = LinearObservationModel(zero, zero)
    prior = StateEstimate(zero, torch.ones(1, 1, dtype=torch.float64))

    with pytest.raises(SingularInnovationCovariance) as info:
        torch_ekf.update_step(prior, torch.ones(1, 1, dtype=torch.float64), observation)

    assert info.value.step is None
    assert isinstance(info.value, ArithmeticError)
    assert "innovation covariance" in str(info.value)


def test_duplicated_noiseless_measures_raise():
    # Two identical measurement rows without noise: S has rank 1
    dynamics = LinearDynamicsModel(torch.eye(2, dtype=torch.float64), torch.eye(2, dtype=torch.float64))
    observation = LinearObservationModel(
        torch.tensor([[1.0, 0.0], [1.0, 0.0]], dtype=torch.float64), torch.zeros(2, 2, dtype=torch.float64)
    )
    prior = StateEstimate(torch.zeros(2, 1, dtype=torch.float64), torch.eye(2, dtype=torch.float64))

    with pytest.raises(SingularInnovationCovariance):
        torch_ekf.filter(prior, dynamics, observation, torch.ones(3, 2, 1, dtype=torch.float64))


def test_filter_failure_exposes_partial_results():
    dtype = torch.float64
    dynamics = LinearDynamicsModel(torch.ones(1, 1, dtype=dtype), torch.zeros(1, 1, dtype=dtype))

    # R = 0 and H = 0 only where the linearization point is negative
    def noise(x: torch.Tensor) -> torch.Tensor:
        return (x >= 0).to(dtype) * torch.ones(1, 1, dtype=dtype)

    def function(x: torch.Tensor) -> torch.Tensor:
        return torch.nn.functional.relu(x)

    observation = torch_ekf.LinearizedObservationModel(function, 1, 1, noise)
    prior = StateEstimate(torch.ones(1, 1, dtype=dtype), torch.ones(1, 1, dtype=dtype))
    measures = torch.tensor([1.0, -10.0, 1.0, 1.0], dtype=dtype)[:, None, None]

    with pytest.raises(SingularInnovationCovariance) as info:
        torch_ekf.filter(prior, dynamics, observation, measures)

    error = info.value
    assert error.step == 2
    assert str(error).startswith("[step 2]")
    assert len(error.partial.filtered) == 2
    assert len(error.partial.predicted) == 3
    assert error.partial.predicted[2].state.item() < 0


def test_smoother_failure_exposes_completed_steps():
    dtype = torch.float64
    engine = KalmanEngine(
        LinearDynamicsModel(torch.eye(2, dtype=dtype), torch.eye(2, dtype=dtype)),
        LinearObservationModel(torch.eye(2, dtype=dtype), torch.eye(2, dtype=dtype)),
    )
    prior = StateEstimate(torch.zeros(2, 1, dtype=dtype), torch.eye(2, dtype=dtype))
    result = engine.filter(prior, torch.randn(5, 2, 1, dtype=dtype))

    # Corrupt the predicted covariance used at step 1
    predicted = list(result.predicted)
    predicted[2] = StateEstimate(predicted[2].state, torch.zeros(2, 2, dtype=dtype))

    with pytest.raises(SingularPredictedCovariance) as info:
        engine.smooth(result.filtered, predicted)

    error = info.value
    assert error.step == 1
    assert len(error.partial) == 3  # Steps 2, 3 and 4 were smoothed
    assert torch.equal(error.partial[-1].state, result.filtered[-1].state)


def test_smooth_checks_lengths():
    engine = random_engine(2, 1)
    prior = StateEstimate(torch.randn(2, 1), _spd_matrix(2))
    result = engine.filter(prior, torch.randn(3, 1, 1))

    with pytest.raises(DimensionMismatch):
        engine.smooth(result.filtered, result.predicted[:-1])


def test_dimension_mismatches():
    engine = random_engine(3, 2)

    with pytest.raises(DimensionMismatch, match="State"):
        engine.predict(StateEstimate(torch.randn(2, 1), torch.eye(2)))

    with pytest.raises(DimensionMismatch, match="Covariance"):
        engine.predict(StateEstimate(torch.randn(3, 1), torch.eye(2)))

    with pytest.raises(DimensionMismatch, match="Observation"):
        engine.update(StateEstimate(torch.randn(3, 1), torch.eye(3)), torch.randn(3, 1))

    with pytest.raises(DimensionMismatch, match="state dimension"):
        KalmanEngine(engine.dynamics, LinearObservationModel(torch.randn(2, 4), torch.eye(2)))


def test_filter_failure_on_wrong_measure_reports_step():
    engine = random_engine(2, 2)
    prior = StateEstimate(torch.randn(2, 1), _spd_matrix(2))
    measures = [torch.randn(2, 1), torch.randn(3, 1)]

    with pytest.raises(DimensionMismatch) as info:
        engine.filter(prior, measures)

    assert info.value.step == 1
    assert len(info.value.partial.filtered) == 1


def test_nan_measure_skips_update():
    engine = random_engine(2, 1)
    prior = StateEstimate(torch.randn(2, 1), _spd_matrix(2))
    measures = torch.randn(3, 1, 1)
    measures[1] = torch.nan

    result = engine.filter(prior, measures)

    assert torch.equal(result.filtered[1].state, result.predicted[1].state)
    assert torch.equal(result.filtered[1].covariance, result.predicted[1].covariance)
    assert torch.isfinite(result.log_likelihood)

    expected = engine.update(engine.predict(engine.predict(result.filtered[0])), measures[2])
    assert torch.allclose(result.filtered[2].state, expected.state, atol=1e-5)


def test_nan_measure_skips_update_for_that_item_only():
    batch, length = 5, 3
    engine = random_engine(2, 1)
    prior = StateEstimate(torch.randn(batch, 2, 1), _spd_matrix(2, batch=(batch,)))
    measures = torch.randn(length, batch, 1, 1)
    measures[0, 2] = torch.nan

    result = engine.filter(prior, measures)

    assert torch.equal(result.filtered[0][2].state, prior[2].state)
    assert torch.allclose(result.filtered[0][:2].state, engine.update(prior[:2], measures[0, :2]).state, atol=1e-5)


def test_missing_observations_skip_degenerate_innovation():
    # H = R = 0: S is singular, but it is never needed when the observation is missing
    dtype = torch.float64
    zero = torch.zeros(1, 1, dtype=dtype)
    observation = LinearObservationModel(zero, zero)
    dynamics = LinearDynamicsModel(torch.ones(1, 1, dtype=dtype), torch.ones(1, 1, dtype=dtype))
    engine = KalmanEngine(dynamics, observation)
    prior = StateEstimate(torch.ones(1, 1, dtype=dtype), torch.ones(1, 1, dtype=dtype))

    updated = engine.update(prior, torch.full((1, 1), torch.nan, dtype=dtype))
    assert updated == prior

    result = engine.filter(prior, torch.full((3, 1, 1), torch.nan, dtype=dtype))
    assert result.filtered[-1].covariance.item() == pytest.approx(3.0)
    assert result.log_likelihood.item() == 0.0

    with pytest.raises(SingularInnovationCovariance):
        engine.update(prior, torch.ones(1, 1, dtype=dtype))


def test_filter_with_shared_covariance_can_be_indexed():
    batch, length = 3, 2
    engine = random_engine(2, 2)
    prior = StateEstimate(torch.randn(batch, 2, 1), _spd_matrix(2))  # Same covariance for all
    measures = torch.randn(length, batch, 2, 1)

    result = engine.filter(prior, measures)
    estimate = result.filtered[-1][1]

    assert estimate.state.shape == (2, 1)
    assert estimate.covariance.shape == (2, 2)

    single = engine.filter(prior[1], measures[:, 1])
    assert torch.allclose(single.filtered[-1].state, estimate.state, atol=1e-5)
    assert torch.allclose(single.filtered[-1].covariance, estimate.covariance, atol=1e-5)


def test_log_likelihood_is_sum_of_innovations():
    engine = random_engine(2, 2)
    prior = StateEstimate(torch.randn(2, 1), _spd_matrix(2))
    measures = torch.randn(3, 2, 1)

    result = engine.filter(prior, measures)

    expected = sum(engine.project(result.predicted[k]).log_likelihood(measures[k]) for k in range(3))
    assert torch.allclose(result.log_likelihood, expected, atol=1e-4)


def test_max_condition_rejects_ill_conditioned_innovations():
    engine = KalmanEngine(
        LinearDynamicsModel(torch.eye(2), torch.eye(2)),
        LinearObservationModel(torch.eye(2), torch.diag(torch.tensor([1.0, 1e3]))),
        max_condition=10.0,
    )
    prior = StateEstimate(torch.zeros(2, 1), torch.eye(2))

    with pytest.raises(SingularInnovationCovariance):
        engine.update(prior, torch.zeros(2, 1))


@pytest.mark.cuda
def test_cpu_cuda_close():
    batch, length = 3, 5
    engine = random_engine(2, 2)
    prior = StateEstimate(torch.randn(batch, 2, 1), _spd_matrix(2, batch=(batch,)))
    measures = torch.randn(length, batch, 2, 1)

    cpu = engine.filter(prior, measures)
    cuda = engine.to(torch.device("cuda")).filter(prior, measures)

    assert torch.allclose(cpu.filtered[-1].state, cuda.filtered[-1].state.cpu(), atol=1e-4)


def test_to_convert_dtype():
    engine = random_engine(3, 4)

    engine64 = engine.to(torch.float64)
    prior = StateEstimate(torch.randn(3, 1), _spd_matrix(3))
    result = engine64.filter(prior, torch.randn(2, 4, 1))

    assert engine64.dtype == torch.float64
    assert engine64.observation.measurement_matrix.dtype == torch.float64
    assert result.filtered[-1].covariance.dtype == torch.float64
    assert engine.dtype == torch.float32


def test_repr():
    engine = KalmanEngine(
        LinearDynamicsModel(torch.tensor([[1.0, 1.0], [0.0, 1.0]]), torch.eye(2) * 0.01),
        LinearObservationModel(torch.tensor([[1.0, 0.0]]), torch.eye(1) * 0.1),
    )

    engine_repr = str(engine)

    assert len(engine_repr.split("\n")) == 3 + 2 + 1
    assert engine_repr.split("\n")[0] == "Kalman Engine (State dimension: 2, Measure dimension: 1)"
    assert "Process: F = tensor([[1., 1.],   &  Q = tensor([[0.01, 0.00]," in engine_repr
    assert "Measurement: H = tensor([[1., 0.]])  &  R = tensor([[0.10]])" in engine_repr
