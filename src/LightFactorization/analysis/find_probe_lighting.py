import argparse
import json
import logging
import time
from itertools import groupby
from pathlib import Path

from coolname import generate_slug

from LightFactorization.analysis.config import Config, load_config
from LightFactorization.analysis.core.probe import ProbeImage
from LightFactorization.analysis.core.sph import get_dominant_light_cpu, visualize_dominant_light
from LightFactorization.analysis.errors import ProbeError
from LightFactorization.analysis.log import configure_logging
from LightFactorization.analysis.utils.io import exr_to_png_tensor, read_exr, write_exr

logger = logging.getLogger(__name__)

# Usage examples:
#
# Single probe, settings from config.ini:
# python -m LightFactorization.analysis.find_probe_lighting --probe "path/to/probe.exr"
#
# Several probes on the gpu, also writing the one light reconstruction:
# python -m LightFactorization.analysis.find_probe_lighting --probe a.exr b.exr --strategy parallel --device cuda --reinject
#
# PNG previews only, explicit projection scale:
# python -m LightFactorization.analysis.find_probe_lighting --probe a.exr --scale 0.5 --png-only


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fit 9 term spherical harmonic lighting and a dominant light to light probes")
    parser.add_argument("--probe", type=str, nargs='+', required=True, help="List of light probe (angular map) EXR files")
    parser.add_argument("--config", type=str, default=None, help="ini file with the run settings (default: config.ini)")
    parser.add_argument("--scale", type=float, default=None, help="Projection normalization factor")
    parser.add_argument("--strategy", type=str, choices=["sequential", "parallel"], default=None, help="Execution strategy")
    parser.add_argument("--device", type=str, default=None, help="Device of the parallel strategy (auto, cpu, cuda, ...)")
    parser.add_argument("--block-rows", type=int, default=None, help="Rows per parallel block")
    parser.add_argument("--workers", type=int, default=None, help="Parallel worker threads")
    parser.add_argument("--output-dir", type=str, default=None, help="Base directory of the experiment folders")
    parser.add_argument("--reinject", action="store_true", help="Also reconstruct the probe lit by the dominant light alone")
    parser.add_argument("--png-only", action="store_true", help="Save PNG previews only, no EXR")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose (DEBUG) logging")
    return parser.parse_args(argv)


def save_image(image, output_dir: Path, name: str, png_only: bool):
    web_dir = output_dir / "web"
    web_dir.mkdir(parents=True, exist_ok=True)
    exr_to_png_tensor(image, web_dir / f"{name}.png", gamma=2.2, exposure=0.0)
    if not png_only:
        write_exr(image, output_dir / f"{name}.exr")


def process_probe(probe: ProbeImage, probe_path: Path, image, scale: float, output_dir: Path, reinject: bool, png_only: bool) -> dict:
    """
    Run projection, reconstruction and dominant light extraction on one loaded probe.

    Geometry and weights of `probe` must already be computed.

    Returns:
        Dict with the lighting report and timing info
    """
    timing = {}

    start_time = time.time()
    probe.load(image)
    sph_coeffs = probe.project(scale)
    timing['sph_project'] = time.time() - start_time
    logger.debug(f"Coefficients:\n{sph_coeffs}")

    start_time = time.time()
    reconstruction = probe.reconstruct()
    timing['sph_reconstruct'] = time.time() - start_time

    start_time = time.time()
    light = probe.compute_dominant_light()
    timing['dominant_light'] = time.time() - start_time

    light_cpu = get_dominant_light_cpu(sph_coeffs, H=probe.height, W=probe.width, light=light)
    logger.info(f"  Dominant direction: {light_cpu.direction}")
    logger.info(f"  Dominant pixel: {light_cpu.pixel}")
    logger.info(f"  Dominant color: {light_cpu.color}")

    save_image(reconstruction, output_dir, f"{probe_path.stem}_reconstructed", png_only)
    save_image(visualize_dominant_light(probe.radiance, light_cpu), output_dir, f"{probe_path.stem}_dominant_light", png_only)

    report = {
        'probe': str(probe_path),
        'width': probe.width,
        'height': probe.height,
        'scale': scale,
        **light_cpu.to_dict(),
    }

    if reinject:
        start_time = time.time()
        single_light_coeffs = probe.reinject_dominant_light(replace=True)
        single_light_reconstruction = probe.reconstruct()
        timing['reinject'] = time.time() - start_time

        save_image(single_light_reconstruction, output_dir, f"{probe_path.stem}_single_light", png_only)
        report['single_light_sph_coeffs'] = single_light_coeffs.numpy().tolist()

        # Measured lighting back in place for whoever reads the probe next
        probe.set_coefficients(sph_coeffs)

    report['timing'] = timing
    return report


def main(argv=None) -> int:
    args = parse_args(argv)

    config = load_config(args.config).with_overrides(
        scale=args.scale,
        strategy=args.strategy,
        device=args.device,
        block_rows=args.block_rows,
        n_workers=args.workers,
        output_dir=args.output_dir,
    )
    configure_logging(config.log_level, config.log_format, verbose=args.verbose)
    Config.log_config(logger)

    experiment_name = generate_slug(2)
    output_dir = Path(config.output_dir) / experiment_name
    output_dir.mkdir(parents=True, exist_ok=True)
    logger.info(f"Output directory: {output_dir}")

    strategy = config.make_strategy()
    logger.info(f"Using {strategy}")

    probes = []
    failed = []
    for probe_path in map(Path, args.probe):
        try:
            probes.append((probe_path, read_exr(probe_path)))
        except ValueError as e:
            logger.error(f"Skipping {probe_path.name}: {e}")
            failed.append(str(probe_path))
    logger.info(f"Loaded {len(probes)} probe files")

    def resolution(item):
        H, W, _ = item[1].shape
        return (W, H)

    # Geometry and weights only depend on the resolution: compute them once per size
    for (W, H), group in groupby(sorted(probes, key=resolution), key=resolution):
        start_time = time.time()
        with ProbeImage(W, H, strategy=strategy) as probe:
            probe.compute_coordinates()
            probe.compute_basis_weights()
            logger.info(f"Geometry for {W}x{H} computed in {time.time() - start_time:.2f} seconds.")

            for probe_path, image in group:
                logger.info(f"Processing {probe_path.name}...")
                try:
                    report = process_probe(probe, probe_path, image, config.scale, output_dir, args.reinject, args.png_only)
                except ProbeError as e:
                    logger.error(f"Failed on {probe_path.name}: {e}")
                    failed.append(str(probe_path))
                    continue

                report['config'] = config.to_dict()
                with open(output_dir / f"{probe_path.stem}.json", "w") as f:
                    json.dump(report, f, indent=2)

                logger.info(f"Timing Summary for {probe_path.stem}:")
                for stage, seconds in report['timing'].items():
                    logger.info(f"  {stage}: {seconds:.2f}s")

    if failed:
        logger.error(f"{len(failed)} probe(s) failed: {failed}")
        return 1

    logger.info(f"Files saved to: {output_dir}")
    return 0


if __name__ == "__main__":
    exit(main())
