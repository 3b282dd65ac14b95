"""Command line interface for pkgbundler."""

import argparse
import json
import logging
import signal
import sys
import tomllib
from pathlib import Path

from .config import EngineConfig, get_config_value, load_config
from .engine import BundleOutcome, bundle
from .errors import BundlerError, Cancelled
from .logutil import setup_logging
from .spec import TargetFormat, validate
from .tools import CancellationToken

log = logging.getLogger("pkgbundler")


def load_specification(path: Path) -> dict[str, object]:
    """Load an already-normalized specification mapping from JSON or TOML.

    Relative paths in the specification resolve against the file's
    directory unless it sets ``base_dir``.
    """
    try:
        if path.suffix == ".toml":
            with open(path, "rb") as f:
                raw = tomllib.load(f)
        else:
            with open(path, encoding="utf-8") as f:
                raw = json.load(f)
    except FileNotFoundError:
        raise BundlerError(f"Specification file not found: {path}") from None
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as e:
        raise BundlerError(f"Invalid specification file {path}: {e}") from e
    if not isinstance(raw, dict):
        raise BundlerError(f"Specification file {path} must contain a mapping")
    raw.setdefault("base_dir", str(path.parent.absolute()))
    return raw


def _report(outcomes: list[BundleOutcome]) -> int:
    failed = 0
    for outcome in outcomes:
        if outcome.ok:
            artifact = outcome.artifact
            log.info(
                "%-8s %s (%s %s)",
                outcome.format.value,
                artifact.path,
                artifact.digest_algorithm,
                artifact.digest,
            )
            for warning in artifact.warnings:
                log.warning("%-8s %s", outcome.format.value, warning)
        else:
            failed += 1
            log.error("%-8s FAILED: %s", outcome.format.value, outcome.error)
    return failed


def _cmd_bundle(args: argparse.Namespace) -> int:
    """Handle 'bundle' subcommand."""
    config_data = load_config(Path(args.config) if args.config else None)
    debug = args.verbose or bool(get_config_value(config_data, "logging", "debug", False))
    color = not args.no_color and bool(
        get_config_value(config_data, "logging", "color", True)
    )
    setup_logging(debug, color)
    config = EngineConfig.from_dict(config_data)

    targets = [TargetFormat.from_short_name(t) for t in args.target]
    raw = load_specification(Path(args.specification))
    if args.output:
        raw["output_dir"] = str(Path(args.output).absolute())
    spec = validate(raw, targets, config)

    token = CancellationToken()
    previous = signal.signal(signal.SIGINT, lambda signum, frame: token.cancel())
    try:
        outcomes = bundle(spec, targets, jobs=args.jobs, token=token, config=config)
    finally:
        signal.signal(signal.SIGINT, previous)

    failed = _report(outcomes)
    if any(isinstance(o.error, Cancelled) for o in outcomes):
        log.info("Interrupted by user")
        return 130
    return 1 if failed else 0


def main(argv: list[str] | None = None) -> None:
    """Command line interface for pkgbundler."""
    parser = argparse.ArgumentParser(
        prog="pkgbundler",
        description="Package application binaries into native installers.",
        epilog=(
            "Examples:\n"
            "  pkgbundler bundle spec.json -t deb\n"
            "  pkgbundler bundle spec.toml -t app -t dmg --jobs 2\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(title="commands", dest="command", required=True)

    bundle_parser = subparsers.add_parser(
        "bundle",
        help="build artifacts from a bundle specification",
        description="Build one artifact per target format from a specification.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    bundle_parser.add_argument(
        "specification",
        help="path to the specification (.json or .toml)",
    )
    bundle_parser.add_argument(
        "-t",
        "--target",
        action="append",
        required=True,
        metavar="FORMAT",
        help="target format: " + ", ".join(f.value for f in TargetFormat) + " (repeatable)",
    )
    bundle_parser.add_argument(
        "-o",
        "--output",
        metavar="DIR",
        help="output directory (overrides the specification)",
    )
    bundle_parser.add_argument(
        "-j",
        "--jobs",
        type=int,
        metavar="N",
        help="maximum concurrent targets (default: one per target)",
    )
    bundle_parser.add_argument(
        "-c",
        "--config",
        metavar="FILE",
        help="engine configuration file (default: .pkgbundler.toml)",
    )
    bundle_parser.add_argument(
        "--verbose",
        action="store_true",
        help="enable verbose/debug logging",
    )
    bundle_parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )
    bundle_parser.set_defaults(func=_cmd_bundle)

    args = parser.parse_args(argv)
    try:
        status = args.func(args)
    except BundlerError as e:
        logging.error(str(e))
        sys.exit(1)
    except ValueError as e:
        logging.error(str(e))
        sys.exit(2)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(130)
    sys.exit(status)


if __name__ == "__main__":
    main()
