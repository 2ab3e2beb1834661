import pytest
import torch

from LightFactorization.analysis.core import buffers
from LightFactorization.analysis.core.buffers import ProbeBuffer, allocate
from LightFactorization.analysis.core.execution import ParallelStrategy
from LightFactorization.analysis.core.probe import ProbeImage
from LightFactorization.analysis.core.sph import evaluate_sh_radiance, project_direction_into_coefficients
from LightFactorization.analysis.errors import (
    AllocationError,
    BufferSizeMismatchError,
    InvalidDimensionError,
    ProbeError,
    StageOrderViolationError,
)

SIZE = 12


def ready_probe(size: int = SIZE, strategy=None) -> ProbeImage:
    probe = ProbeImage(size, size, strategy=strategy)
    probe.compute_coordinates()
    probe.compute_basis_weights()
    return probe


def light_probe_image(probe: ProbeImage, direction=(0.3, -0.2, 0.9), color=(2.0, 1.0, 0.5)) -> torch.Tensor:
    direction = torch.tensor(direction)
    direction = direction / torch.linalg.norm(direction)
    sph_coeffs = project_direction_into_coefficients(direction, torch.tensor(color))
    return evaluate_sh_radiance(sph_coeffs, probe.direction)


# -----------------------------
# Construction
# -----------------------------

@pytest.mark.parametrize("width, height", [(0, 8), (8, 0), (-1, 8), (2.5, 8), ("8", 8), (None, 8)])
def test_invalid_dimensions(width, height):
    with pytest.raises(InvalidDimensionError):
        ProbeImage(width, height)


def test_invalid_dimension_is_value_error():
    with pytest.raises(ValueError):
        ProbeImage(8, -3)


def test_non_square_probe():
    with ProbeImage(16, 8) as probe:
        probe.compute_coordinates()
        assert probe.width == 16
        assert probe.height == 8
        assert probe.direction.shape == (8, 16, 3)
        assert probe.angular.shape == (8, 16, 2)


# -----------------------------
# Load
# -----------------------------

def test_load_rejects_wrong_size():
    with ProbeImage(8, 8) as probe:
        with pytest.raises(BufferSizeMismatchError):
            probe.load(torch.zeros(8 * 8 * 3 - 1))
        with pytest.raises(BufferSizeMismatchError):
            probe.load(torch.zeros(8, 8, 4))
        with pytest.raises(ValueError):
            probe.load(torch.zeros(7, 8, 3))


def test_load_accepts_flat_and_shaped_images():
    image = torch.arange(6 * 4 * 3, dtype=torch.float32).reshape(4, 6, 3)
    with ProbeImage(6, 4) as probe:
        probe.load(image.flatten().numpy())
        assert torch.equal(probe.radiance, image)

        probe.load(image * 2.0)
        assert torch.equal(probe.radiance, image * 2.0)


def test_load_copies_input():
    image = torch.ones(4, 4, 3)
    with ProbeImage(4, 4) as probe:
        probe.load(image)
        image.fill_(5.0)
        assert torch.equal(probe.radiance, torch.ones(4, 4, 3))

        radiance = probe.radiance
        radiance.fill_(7.0)
        assert torch.equal(probe.radiance, torch.ones(4, 4, 3))


# -----------------------------
# Stage order
# -----------------------------

@pytest.mark.parametrize("accessor", [
    "direction", "angular", "basis_weight", "radiance", "reconstruction",
    "coefficients", "dominant_direction", "dominant_color", "dominant_light",
])
def test_reading_before_computing_raises(accessor):
    with ProbeImage(4, 4) as probe:
        with pytest.raises(StageOrderViolationError):
            getattr(probe, accessor)


def test_weights_need_coordinates():
    with ProbeImage(4, 4) as probe:
        with pytest.raises(StageOrderViolationError):
            probe.compute_basis_weights()


def test_projection_needs_weights_and_radiance():
    with ProbeImage(4, 4) as probe:
        probe.load(torch.ones(4, 4, 3))
        with pytest.raises(StageOrderViolationError):
            probe.project(1.0)

    with ready_probe(4) as probe:
        with pytest.raises(StageOrderViolationError):
            probe.project(1.0)


def test_reconstruction_needs_coefficients():
    with ready_probe(4) as probe:
        with pytest.raises(StageOrderViolationError):
            probe.reconstruct()

    with ProbeImage(4, 4) as probe:
        probe.set_coefficients(torch.ones(9, 3))
        with pytest.raises(StageOrderViolationError):
            probe.reconstruct()


def test_dominant_light_needs_coefficients():
    with ready_probe(4) as probe:
        with pytest.raises(StageOrderViolationError):
            probe.compute_dominant_light()
        with pytest.raises(StageOrderViolationError):
            probe.reinject_dominant_light(replace=False)
        with pytest.raises(StageOrderViolationError):
            probe.dominant_light_coefficients()


def test_stage_order_violation_is_probe_error():
    with ProbeImage(4, 4) as probe:
        with pytest.raises(ProbeError):
            probe.compute_basis_weights()
        with pytest.raises(RuntimeError):
            probe.compute_basis_weights()


def test_project_rejects_non_finite_scale():
    with ready_probe(4) as probe:
        probe.load(torch.ones(4, 4, 3))
        with pytest.raises(ValueError):
            probe.project(float("nan"))


# -----------------------------
# Pipeline
# -----------------------------

def test_geometry_is_idempotent():
    with ProbeImage(SIZE, SIZE) as probe:
        probe.compute_coordinates()
        direction, angular = probe.direction, probe.angular
        probe.compute_coordinates()
        assert torch.equal(probe.direction, direction)
        assert torch.equal(probe.angular, angular)

        probe.compute_basis_weights()
        weights = probe.basis_weight
        probe.compute_basis_weights()
        assert torch.equal(probe.basis_weight, weights)


def test_sequential_projection_is_reproducible():
    with ready_probe() as probe:
        probe.load(light_probe_image(probe))
        first = probe.project(1.0)
        second = probe.project(1.0)
        assert torch.equal(first, second)


def test_reconstruction_keeps_loaded_radiance():
    with ready_probe() as probe:
        image = light_probe_image(probe)
        probe.load(image)
        probe.project(1.0)
        reconstruction = probe.reconstruct()

        assert reconstruction.shape == (SIZE, SIZE, 3)
        assert torch.equal(probe.reconstruction, reconstruction)
        assert torch.equal(probe.radiance, image)
        assert torch.all(reconstruction >= 0.0)


def test_coefficients_are_snapshots():
    with ready_probe() as probe:
        probe.load(light_probe_image(probe))
        sph_coeffs = probe.project(1.0)
        sph_coeffs.fill_(0.0)
        assert not torch.equal(probe.coefficients, sph_coeffs)


def test_projection_scale():
    with ready_probe() as probe:
        probe.load(light_probe_image(probe))
        unit_scale = probe.project(1.0)
        half_scale = probe.project(0.5)
        assert torch.allclose(half_scale, 0.5 * unit_scale, rtol=1e-6)


def test_reinject_without_replace_leaves_coefficients():
    with ready_probe() as probe:
        probe.load(light_probe_image(probe))
        measured = probe.project(1.0)
        light = probe.compute_dominant_light()

        single_light = probe.reinject_dominant_light(replace=False)

        assert torch.equal(probe.coefficients, measured)
        assert torch.allclose(single_light, project_direction_into_coefficients(light.direction, light.color))


def test_reinject_with_replace_keeps_earlier_snapshot():
    with ready_probe() as probe:
        probe.load(light_probe_image(probe))
        measured = probe.project(1.0)
        probe.compute_dominant_light()

        single_light = probe.reinject_dominant_light(replace=True)

        assert torch.equal(probe.coefficients, single_light)
        assert not torch.allclose(measured, single_light)

        # Restore the saved matrix
        probe.set_coefficients(measured)
        assert torch.equal(probe.coefficients, measured)


def test_reinjected_light_is_recovered():
    with ready_probe() as probe:
        probe.load(light_probe_image(probe))
        probe.project(1.0)
        light = probe.compute_dominant_light()

        probe.reinject_dominant_light(replace=True)
        again = probe.compute_dominant_light()

        assert torch.allclose(again.direction, light.direction, atol=1e-5)
        assert torch.allclose(again.color, light.color, rtol=1e-4)


def test_project_resets_dominant_light():
    with ready_probe() as probe:
        probe.load(light_probe_image(probe))
        probe.project(1.0)
        probe.compute_dominant_light()
        assert probe.dominant_direction.shape == (3,)

        probe.project(1.0)
        with pytest.raises(StageOrderViolationError):
            probe.dominant_light


def test_new_projection_invalidates_reconstruction():
    with ready_probe() as probe:
        probe.load(torch.ones(SIZE, SIZE, 3))
        probe.project(1.0)
        first = probe.reconstruct()

        probe.load(5.0 * torch.ones(SIZE, SIZE, 3))
        probe.project(1.0)
        with pytest.raises(StageOrderViolationError):
            probe.reconstruction

        assert not torch.equal(probe.reconstruct(), first)


def test_new_coefficients_invalidate_reconstruction():
    with ready_probe() as probe:
        probe.load(light_probe_image(probe))
        probe.project(1.0)
        probe.reconstruct()
        probe.compute_dominant_light()

        probe.reinject_dominant_light(replace=True)
        with pytest.raises(StageOrderViolationError):
            probe.reconstruction

        single_light = probe.reconstruct()
        probe.set_coefficients(torch.zeros(9, 3))
        with pytest.raises(StageOrderViolationError):
            probe.reconstruction
        assert torch.all(single_light >= 0.0)


def test_set_coefficients_checks_shape():
    with ProbeImage(4, 4) as probe:
        with pytest.raises(ValueError):
            probe.set_coefficients(torch.ones(3, 9))


def test_several_probes_share_geometry():
    with ready_probe() as probe:
        weights = probe.basis_weight
        for direction in [(0.0, 0.0, 1.0), (0.5, 0.5, 0.2)]:
            probe.load(light_probe_image(probe, direction=direction))
            probe.project(1.0)
            probe.reconstruct()
        assert torch.equal(probe.basis_weight, weights)


def test_parallel_strategy_probe_matches_sequential():
    strategy = ParallelStrategy(device="cpu", block_rows=5, n_workers=3)
    with ready_probe() as sequential, ready_probe(strategy=strategy) as parallel:
        image = light_probe_image(sequential)
        for probe in (sequential, parallel):
            probe.load(image)
            probe.project(1.0)
            probe.reconstruct()

        assert torch.allclose(parallel.direction, sequential.direction, atol=1e-6)
        assert torch.allclose(parallel.basis_weight, sequential.basis_weight, atol=1e-7)
        assert torch.allclose(parallel.coefficients, sequential.coefficients, rtol=1e-4, atol=1e-5)
        assert torch.allclose(parallel.reconstruction, sequential.reconstruction, rtol=1e-4, atol=1e-5)


# -----------------------------
# Lifetime
# -----------------------------

def test_release_makes_probe_unusable():
    probe = ready_probe(4)
    probe.release()

    assert probe.released
    with pytest.raises(StageOrderViolationError):
        probe.direction
    with pytest.raises(StageOrderViolationError):
        probe.compute_coordinates()
    with pytest.raises(StageOrderViolationError):
        probe.load(torch.ones(4, 4, 3))

    # Releasing twice is harmless
    probe.release()


def test_context_manager_releases_on_error():
    with pytest.raises(BufferSizeMismatchError):
        with ProbeImage(4, 4) as probe:
            probe.load(torch.ones(3))
    assert probe.released


def test_allocate_reports_allocation_error(monkeypatch):
    def failing_zeros(*args, **kwargs):
        raise RuntimeError("out of memory")

    monkeypatch.setattr(torch, "zeros", failing_zeros)
    with pytest.raises(AllocationError):
        allocate((4, 4))


def test_allocation_error_is_memory_error(monkeypatch):
    def failing_zeros(*args, **kwargs):
        raise RuntimeError("out of memory")

    monkeypatch.setattr(torch, "zeros", failing_zeros)
    with pytest.raises(MemoryError):
        allocate((4, 4))


def test_failed_allocation_releases_earlier_buffers(monkeypatch):
    real_allocate = buffers.allocate
    calls = []

    def allocate_until_fourth(shape, device=buffers.HOST, dtype=torch.float32):
        calls.append(shape)
        if len(calls) == 4:
            raise AllocationError(f"no room for {shape}")
        return real_allocate(shape, device, dtype)

    released = []
    real_release = ProbeBuffer.release

    def tracking_release(self):
        released.append(self.name)
        real_release(self)

    monkeypatch.setattr(buffers, "allocate", allocate_until_fourth)
    monkeypatch.setattr(ProbeBuffer, "release", tracking_release)

    with pytest.raises(AllocationError):
        ProbeImage(8, 8)

    assert released == ["direction", "angular", "basis_weight"]


def test_cpu_probe_has_no_mirror():
    with ProbeImage(4, 4) as probe:
        assert all(not buffer.has_mirror for buffer in probe._buffers.values())


@pytest.mark.skipif(not torch.cuda.is_available(), reason="needs a cuda device")
def test_cuda_probe_mirrors_buffers():
    strategy = ParallelStrategy(device="cuda", block_rows=4)
    with ready_probe(8, strategy=strategy) as probe:
        assert all(buffer.has_mirror for buffer in probe._buffers.values())
        probe.load(light_probe_image(probe))
        sph_coeffs = probe.project(1.0)
        assert sph_coeffs.device.type == "cpu"
        assert probe.reconstruct().device.type == "cpu"
