import json
import logging

import pytest
import torch

from LightFactorization.analysis.config import Config
from LightFactorization.analysis.core.probe import ProbeImage
from LightFactorization.analysis.core.sph import evaluate_sh_radiance, project_direction_into_coefficients
from LightFactorization.analysis.find_probe_lighting import main, process_probe
from LightFactorization.analysis.utils.io import read_exr, write_exr

SIZE = 16


@pytest.fixture(autouse=True)
def isolated_run():
    Config.reset()
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
    Config.reset()


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config.ini"
    path.write_text("[execution]\nstrategy = parallel\ndevice = cpu\nblock_rows = 4\nn_workers = 2\n")
    return path


def write_probe(path, image):
    try:
        write_exr(image, path)
    except ValueError:
        pytest.skip("OpenCV build without OpenEXR support")
    return path


def single_light_image() -> torch.Tensor:
    direction = torch.tensor([0.2, 0.4, 0.9])
    direction = direction / torch.linalg.norm(direction)
    sph_coeffs = project_direction_into_coefficients(direction, torch.tensor([1.0, 0.8, 0.6]))
    with ProbeImage(SIZE, SIZE) as probe:
        probe.compute_coordinates()
        return evaluate_sh_radiance(sph_coeffs, probe.direction)


def test_exr_roundtrip(tmp_path):
    image = single_light_image()
    path = write_probe(tmp_path / "probe.exr", image)

    assert torch.allclose(read_exr(path), image, atol=1e-6)


def test_read_missing_exr_raises(tmp_path):
    with pytest.raises(ValueError):
        read_exr(tmp_path / "missing.exr")


def test_main_writes_report(tmp_path, config_path):
    probe_path = write_probe(tmp_path / "probe.exr", single_light_image())
    output_dir = tmp_path / "out"

    exit_code = main(["--probe", str(probe_path), "--config", str(config_path),
                      "--output-dir", str(output_dir), "--reinject"])

    assert exit_code == 0
    (experiment_dir,) = output_dir.iterdir()
    with open(experiment_dir / "probe.json") as f:
        report = json.load(f)

    assert report['width'] == SIZE
    assert len(report['sph_coeffs']) == 9
    assert len(report['direction']) == 3
    assert len(report['color']) == 3
    assert all(0 <= p < SIZE for p in report['pixel'])
    assert len(report['single_light_sph_coeffs']) == 9
    assert report['config']['strategy'] == "parallel"
    assert (experiment_dir / "web" / "probe_reconstructed.png").exists()
    assert (experiment_dir / "web" / "probe_single_light.png").exists()
    assert (experiment_dir / "probe_dominant_light.exr").exists()


def test_main_continues_after_failed_probe(tmp_path, config_path):
    # All black: band 1 is zero and no dominant direction exists
    dark_path = write_probe(tmp_path / "dark.exr", torch.zeros(SIZE, SIZE, 3))
    probe_path = write_probe(tmp_path / "probe.exr", single_light_image())
    output_dir = tmp_path / "out"

    exit_code = main(["--probe", str(dark_path), str(probe_path), str(tmp_path / "missing.exr"),
                      "--config", str(config_path), "--output-dir", str(output_dir), "--png-only"])

    assert exit_code == 1
    (experiment_dir,) = output_dir.iterdir()
    assert (experiment_dir / "probe.json").exists()
    assert not (experiment_dir / "dark.json").exists()
    assert not list(experiment_dir.glob("*.exr"))


def test_process_probe_report(tmp_path):
    image = single_light_image()
    with ProbeImage(SIZE, SIZE) as probe:
        probe.compute_coordinates()
        probe.compute_basis_weights()
        report = process_probe(probe, tmp_path / "probe.exr", image, 1.0, tmp_path, reinject=True, png_only=True)
        measured = probe.coefficients

    assert set(report) >= {'probe', 'scale', 'direction', 'color', 'sph_coeffs', 'pixel', 'single_light_sph_coeffs', 'timing'}
    assert report['sph_coeffs'] == measured.tolist()
    assert torch.linalg.norm(torch.tensor(report['direction'])).item() == pytest.approx(1.0, abs=1e-5)
    assert json.loads(json.dumps(report)) == report
    assert (tmp_path / "web" / "probe_dominant_light.png").exists()
    assert not list(tmp_path.glob("*.exr"))
