"""
Command line entry point: ``stemsplit <input> <out_dir>``.
"""

import argparse
import logging
import sys
from typing import List, Optional

from tqdm.auto import tqdm

from stemsplit.core.config import Config
from stemsplit.core.exceptions import SeparationError
from stemsplit.core.logger import setup_logging
from stemsplit.core.separation_manager import SeparationManager
from stemsplit.models.model_manager import ModelManager, existing_models


def build_parser(config: Config) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stemsplit", description="stemsplit - spectral-mask stem separation"
    )

    parser.add_argument("input", help="Path to input audio file")
    parser.add_argument("out_dir", help="Output directory for the stems")
    parser.add_argument(
        "--model-name", "-m",
        default=config.get("model.name", "2stems"),
        help=f"Model name (built-in: {', '.join(existing_models())})",
    )
    parser.add_argument(
        "--models-dir", default=config.get("paths.models_dir"), help="Directory holding model folders"
    )
    parser.add_argument("--frame-length", type=int, help="Analysis frame length N")
    parser.add_argument("--hop-length", type=int, help="Hop length H")
    parser.add_argument("--batch-size", type=int, help="Frames per estimator call")
    parser.add_argument("--window", help="Window function (e.g. hann, hamming, blackman)")
    parser.add_argument("--format", help="Output format (default: input extension, else wav)")
    parser.add_argument("--device", default=config.get("model.device", "auto"), help="cpu, cuda, cuda:<n> or auto")
    parser.add_argument("--log-level", default=config.get("logging.level", "INFO"), help="Logging level")
    parser.add_argument("--no-progress", action="store_true", help="Disable the progress bar")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    config = Config()
    args = build_parser(config).parse_args(argv)

    setup_logging(args.log_level, file_enabled=bool(config.get("logging.file_enabled", True)))
    logger = logging.getLogger("stemsplit")

    config.set("model.device", args.device)
    manager = SeparationManager(config, ModelManager(args.models_dir))

    progress_bar = None
    if not args.no_progress:
        progress_bar = tqdm(total=100.0, desc="Separating", unit="%", leave=False)

    def progress_handler(progress: float, message: str):
        if progress_bar is not None:
            progress_bar.n = round(progress, 1)
            progress_bar.set_postfix_str(message, refresh=True)

    overrides = {
        "frame_length": args.frame_length,
        "hop_length": args.hop_length,
        "batch_size": args.batch_size,
        "window": args.window,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}

    try:
        outputs = manager.separate_file(
            args.input,
            args.out_dir,
            args.model_name,
            progress_callback=progress_handler,
            output_format=args.format,
            **overrides,
        )
    except (SeparationError, OSError) as e:
        logger.error(f"Separation failed: {e}")
        return 1
    finally:
        if progress_bar is not None:
            progress_bar.close()
        manager.shutdown()

    for stem, path in outputs.items():
        logger.info(f"  - {stem}: {path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
