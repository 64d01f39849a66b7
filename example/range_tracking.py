"""Example tracking a 2D target from noisy range/bearing observations (EKF + RTS smoothing)"""

import argparse

import matplotlib.pyplot as plt
import torch

import torch_ekf
from torch_ekf.motion import constant_derivative_models


def range_bearing(x: torch.Tensor) -> torch.Tensor:
    """Observation function: distance and angle of the target seen from the origin

    Args:
        x (torch.Tensor): State (x, y, vx, vy)
            Shape: (4, 1)

    Returns:
        torch.Tensor: Range and bearing
            Shape: (2, 1)
    """
    return torch.stack([x[:2, 0].norm(), torch.atan2(x[1, 0], x[0, 0])])[:, None]


def generate_data(
    n: int, dynamics: torch_ekf.LinearDynamicsModel, noise: torch.Tensor
) -> tuple[torch.Tensor, torch.Tensor]:
    """Simulate a constant velocity target and its range/bearing observations

    Returns:
        torch.Tensor: True states
            Shape: (T, 4, 1)
        torch.Tensor: Observations
            Shape: (T, 2, 1)
    """
    process_chol = torch.linalg.cholesky(dynamics.process_noise + 1e-9 * torch.eye(4))
    noise_chol = torch.linalg.cholesky(noise)

    x = torch.tensor([[50.0], [20.0], [-1.0], [1.0]])
    states = []
    measures = []
    for _ in range(n):
        x = dynamics.transition @ x + process_chol @ torch.randn(4, 1)
        states.append(x)
        measures.append(range_bearing(x) + noise_chol @ torch.randn(2, 1))

    return torch.stack(states), torch.stack(measures)


def main(n: int, range_std: float, bearing_std: float, process_std: float, double: bool):
    print("Parameters")
    print(f"Process noise (acceleration): {process_std}")
    print(f"Observation noise: range={range_std}, bearing={bearing_std}")

    # Constant velocity dynamics (x, y, vx, vy). The linear observation model is replaced by range/bearing
    dynamics, _ = constant_derivative_models(1.0, process_std, dim=2, order=1, expected_model=True)
    noise = torch.diag(torch.tensor([range_std, bearing_std]) ** 2)
    observation = torch_ekf.LinearizedObservationModel(range_bearing, 4, 2, noise)
    engine = torch_ekf.KalmanEngine(dynamics, observation, joseph_update=True)
    if double:
        engine = engine.to(torch.float64)

    print(engine)

    x, z = generate_data(n, dynamics, noise)

    # Rough initial guess from the first observation
    initial_state = torch_ekf.StateEstimate(
        torch.tensor([[z[0, 0, 0] * torch.cos(z[0, 1, 0])], [z[0, 0, 0] * torch.sin(z[0, 1, 0])], [0.0], [0.0]]),
        torch.diag(torch.tensor([10.0, 10.0, 2.0, 2.0]) ** 2),
    )

    try:
        result = engine.filter(initial_state, z)
        smoothed = engine.smooth(result.filtered, result.predicted)
    except torch_ekf.KalmanError as error:
        print(f"Estimation failed: {error}")
        return

    filtered = torch_ekf.StateEstimate.stack(result.filtered).to(torch.float32)
    smoothed_states = torch_ekf.StateEstimate.stack(smoothed).to(torch.float32)

    print(f"Log-likelihood: {result.log_likelihood.item():.2f}")
    print(f"Filtering MSE: {(filtered.state[:, :2] - x[:, :2]).pow(2).mean()}")
    print(f"Smoothing MSE: {(smoothed_states.state[:, :2] - x[:, :2]).pow(2).mean()}")

    plt.rcParams["font.size"] = 20

    plt.figure(figsize=(24, 16))
    plt.plot(x[:, 0, 0], x[:, 1, 0], color="k", label="True trajectory")
    plt.plot(filtered.state[:, 0, 0], filtered.state[:, 1, 0], color="y", label="Filtered trajectory")
    plt.plot(smoothed_states.state[:, 0, 0], smoothed_states.state[:, 1, 0], color="g", label="Smoothed trajectory")
    plt.plot(
        z[:, 0, 0] * torch.cos(z[:, 1, 0]),
        z[:, 0, 0] * torch.sin(z[:, 1, 0]),
        "o",
        color="r",
        markersize=2.0,
        label="Observations",
    )
    plt.scatter([0.0], [0.0], marker="x", color="b", label="Sensor")

    plt.xlabel("x")
    plt.ylabel("y")
    plt.axis("equal")
    plt.legend(loc="upper right")
    plt.show()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="EKF example, tracking a target from range and bearing")
    parser.add_argument("--n", default=200, type=int, help="Number of time steps")
    parser.add_argument("--range-std", default=1.0, type=float, help="Range noise")
    parser.add_argument("--bearing-std", default=0.02, type=float, help="Bearing noise (radians)")
    parser.add_argument("--process-std", default=0.05, type=float, help="Acceleration noise")
    parser.add_argument("--double", action="store_true", help="Run in float64")

    args = parser.parse_args()

    main(args.n, args.range_std, args.bearing_std, args.process_std, args.double)
