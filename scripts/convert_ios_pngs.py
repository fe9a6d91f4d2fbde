#!/usr/bin/env python3
import argparse
import logging
import os
import shutil
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from PIL import Image

from normalize_config import compression_level, load_env_config, load_rules, merge_config, positive_int
from png_normalizer import PNG_SIGNATURE, PngNormalizerError, is_ios_optimized_png, normalize


def configure_logging(verbose: bool = False, quiet: bool = False) -> logging.Logger:
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    return logging.getLogger(__name__)


def write_png(destination_path, data: bytes) -> Path:
    destination_path = Path(destination_path)
    destination_path.parent.mkdir(parents=True, exist_ok=True)
    destination_path.write_bytes(data)
    return destination_path


def normalize_file(source_path, destination_path, level: int = -1) -> Path:
    """Read source_path, normalize it and write the result to destination_path."""
    source_path = Path(source_path)
    if not source_path.is_file():
        raise FileNotFoundError(f"{source_path} does not exist.")
    return write_png(destination_path, normalize(source_path.read_bytes(), level))


def verify_png(path) -> None:
    with Image.open(path) as img:
        img.load()


def output_path_for(path, suffix: str) -> Path:
    path = Path(path)
    return path.with_name(f"{path.stem}{suffix}{path.suffix}")


def find_candidates(root, suffix: str, exclude_patterns: Iterable[str] = ()) -> Iterator[Path]:
    """Yield PNGs under root, skipping ones that already carry the output suffix."""
    root = Path(root)
    patterns = [p.lower() for p in exclude_patterns]
    for path in sorted(root.rglob('*')):
        if not path.is_file() or path.suffix.lower() != '.png':
            continue
        if path.stem.endswith(suffix):
            continue
        relative = path.relative_to(root).as_posix().lower()
        if any(pattern in relative for pattern in patterns):
            continue
        yield path


class PngNormalizer:
    def __init__(self, config: Dict[str, Any], force: bool = False, verify: bool = False):
        self.config = config
        self.force = force
        self.verify = verify
        self.logger = logging.getLogger(self.__class__.__name__)

    def convert(self, source, destination, copy_standard: bool = False) -> Dict[str, Any]:
        source, destination = Path(source), Path(destination)
        try:
            data = source.read_bytes()
        except OSError as e:
            self.logger.error(f"Error reading {source}: {e}")
            return {"success": False, "message": str(e), "path": str(source)}

        try:
            optimized = is_ios_optimized_png(data)
        except PngNormalizerError as e:
            self.logger.error(f"Error converting {source}: {e}")
            return {"success": False, "message": str(e), "path": str(source)}

        # Standard PNGs already hold zlib-wrapped RGBA data and must not be swapped.
        if not self.force and data.startswith(PNG_SIGNATURE) and not optimized:
            if copy_standard:
                destination.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy(source, destination)
                self.logger.info(f"Not an iOS-optimized PNG, copied unchanged: {source} -> {destination}")
                return {"success": True, "message": "Copied unchanged", "path": str(destination)}
            self.logger.info(f"Skipping {source}: not an iOS-optimized PNG")
            return {"success": True, "skipped": True, "message": "Not an iOS-optimized PNG", "path": str(source)}

        try:
            write_png(destination, normalize(data, self.config["level"]))
        except (PngNormalizerError, OSError) as e:
            self.logger.error(f"Error converting {source}: {e}")
            return {"success": False, "message": str(e), "path": str(source)}

        if self.verify:
            try:
                verify_png(destination)
            except (OSError, SyntaxError) as e:
                destination.unlink(missing_ok=True)
                self.logger.error(f"Converted {source} but the result does not decode, removed {destination}: {e}")
                return {"success": False, "message": f"Verification failed: {e}", "path": str(destination)}

        self.logger.info(f"Converted iOS-optimized PNG: {source} -> {destination}")
        return {"success": True, "message": "Converted", "path": str(destination)}

    def normalize_under(self, root) -> Dict[str, List[str]]:
        """Normalize every PNG under root into a sibling file named with the configured suffix."""
        suffix = self.config["suffix"]
        candidates = list(find_candidates(root, suffix, self.config["exclude_patterns"]))
        self.logger.info(f"Found {len(candidates)} candidate PNG(s) under {root}")

        summary: Dict[str, List[str]] = {"converted": [], "skipped": [], "failed": []}
        if not candidates:
            return summary

        with ThreadPoolExecutor(max_workers=self.config["workers"]) as executor:
            results = executor.map(lambda p: self.convert(p, output_path_for(p, suffix)), candidates)
            for path, result in zip(candidates, results):
                if not result["success"]:
                    summary["failed"].append(str(path))
                elif result.get("skipped"):
                    summary["skipped"].append(str(path))
                else:
                    summary["converted"].append(str(path))

        self.logger.info(f"Converted {len(summary['converted'])} PNG(s), skipped {len(summary['skipped'])}")
        if summary["failed"]:
            self.logger.warning(f"Failed to convert {len(summary['failed'])} PNG(s)")
        if not summary["converted"]:
            self.logger.info("No iOS-optimized PNGs found")
        return summary


@dataclass
class Options:
    input: Optional[str] = None
    output: Optional[str] = None
    quiet: bool = False
    verbose: bool = False
    force: bool = False
    verify: bool = False
    level: Optional[int] = None
    workers: Optional[int] = None
    help: bool = False
    prog: str = "convert_ios_pngs.py"

    @property
    def directory(self) -> bool:
        return bool(self.input) and os.path.isdir(self.input)

    @property
    def show_usage(self) -> bool:
        return self.help or not (self.directory or (self.input and self.output))


def _argument_type(validator):
    def convert(value: str):
        try:
            return validator(value)
        except ValueError as e:
            raise argparse.ArgumentTypeError(str(e)) from e
    convert.__name__ = validator.__name__
    return convert


def build_parser(prog: Optional[str] = None) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=prog, add_help=False, description="Convert iOS-optimized PNGs to standard PNGs")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log chunk-level detail")
    parser.add_argument("--help", action="store_true", help="Show usage and exit")
    parser.add_argument("--force", action="store_true", help="Convert PNGs even without a CgBI chunk")
    parser.add_argument("--verify", action="store_true", help="Decode every written PNG with Pillow")
    parser.add_argument("--level", type=_argument_type(compression_level), help="zlib compression level (-1..9)")
    parser.add_argument("--workers", type=_argument_type(positive_int), help="Parallel conversions in directory mode")
    parser.add_argument("input", nargs="?")
    parser.add_argument("output", nargs="?")
    return parser


def parse_options(argv: Optional[List[str]] = None, prog: Optional[str] = None) -> Options:
    parser = build_parser(prog)
    # Unrecognized switches are ignored so they fall through to the usage message.
    args, _ = parser.parse_known_args(argv)
    return Options(
        input=args.input,
        output=args.output,
        quiet=args.quiet,
        verbose=args.verbose,
        force=args.force,
        verify=args.verify,
        level=args.level,
        workers=args.workers,
        help=args.help,
        prog=parser.prog,
    )


def print_usage(prog: str) -> None:
    print(f"Usage: {prog} [-q] input-file output-file", file=sys.stderr)
    print(f"or...  {prog} [-q] input-directory", file=sys.stderr)


def run(options: Options, config: Dict[str, Any]) -> int:
    if options.show_usage:
        print_usage(options.prog)
        return 1

    logger = configure_logging(options.verbose, options.quiet)
    overrides = {"level": options.level, "workers": options.workers}

    try:
        if options.directory:
            config = merge_config(config, load_rules(Path(options.input)), overrides)
        else:
            config = merge_config(config, overrides)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    normalizer = PngNormalizer(config, force=options.force, verify=options.verify)
    if options.directory:
        normalizer.normalize_under(options.input)
        return 0

    result = normalizer.convert(options.input, options.output, copy_standard=True)
    return 0 if result["success"] else 1


def main(argv: Optional[List[str]] = None) -> int:
    options = parse_options(argv)
    try:
        config = load_env_config()
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return run(options, config)


if __name__ == "__main__":
    sys.exit(main())
