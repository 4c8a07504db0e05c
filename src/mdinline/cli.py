"""Command-line interface for mdinline."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from .version import __version__

ROOT_ENV = "MDINLINE_ROOT"


def _get_usage() -> str:
    return (
        f"mdinline {__version__}\n"
        "Usage:\n"
        "  mdinline [--help] [--version|--ver]\n"
        "  mdinline [--root DIR] [--file REL_PATH] [options]\n\n"
        "Options:\n"
        "  --root DIR                   Directory holding the Markdown sources (default: $MDINLINE_ROOT or .)\n"
        "  --file REL_PATH              Convert a single document and print the HTML\n"
        "  --input-extension EXT        Extension of the files to convert (default: md)\n"
        "  --output-extension EXT       Extension of the generated files (default: html)\n"
        "  --include-artifact-mapping   Report converted files as final artifacts\n"
        "  --params PATH                Read parameters from a JSON file\n"
        "  --write-params PATH          Write the default parameters JSON and exit\n"
        "  --verbose                    Verbose progress logs\n"
        "  --debug                      Debug logs"
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("--help", action="store_true")
    parser.add_argument("--version", action="store_true")
    parser.add_argument("--ver", action="store_true")
    parser.add_argument("--root", help="Directory holding the Markdown sources")
    parser.add_argument("--file", help="Relative path of a single Markdown document to convert to stdout")
    parser.add_argument("--input-extension", help="Extension of the files to convert")
    parser.add_argument("--output-extension", help="Extension of the generated files")
    parser.add_argument(
        "--include-artifact-mapping",
        action="store_true",
        help="Report converted files as final artifacts (disable when the HTML is processed further)",
    )
    parser.add_argument("--params", help="Path to a JSON file with input_extension, output_extension, include_artifact_mapping")
    parser.add_argument("--write-params", help="Write the default parameters JSON to the given path and exit")
    parser.add_argument("--verbose", action="store_true", help="Verbose progress logs")
    parser.add_argument("--debug", action="store_true", help="Debug logs")
    return parser


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    parser = _build_parser()
    args, unknown = parser.parse_known_args(argv)
    if unknown:
        print(_get_usage())
        return 2

    if args.help:
        print(_get_usage())
        return 0

    if args.version or args.ver:
        print(__version__)
        return 0

    from mdinline import core
    from mdinline.host import LocalHost

    core.setup_logging(args.verbose, args.debug)

    if args.write_params:
        target = Path(args.write_params).expanduser().resolve()
        try:
            core.write_params_file(target)
        except OSError as exc:
            print(f"Unable to write params file {target}: {exc}", file=sys.stderr)
            return core.EXIT_INVALID_ARGS
        if args.verbose:
            print(f"Default parameters written to {target}")
        return 0

    root = Path(args.root or os.environ.get(ROOT_ENV) or ".").expanduser().resolve()
    if not root.exists() or not root.is_dir():
        print(f"Root directory not found: {root}", file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    params = core.ProcessingParams()
    if args.params:
        params_path = Path(args.params).expanduser().resolve()
        if not params_path.exists() or not params_path.is_file():
            print(f"Params file not found: {params_path}", file=sys.stderr)
            return core.EXIT_INVALID_ARGS
        try:
            params = core.load_params_file(params_path)
        except ValueError as exc:
            print(str(exc), file=sys.stderr)
            return core.EXIT_INVALID_ARGS

    overrides = {
        "input_extension": args.input_extension or params.input_extension,
        "output_extension": args.output_extension or params.output_extension,
        "include_artifact_mapping": bool(args.include_artifact_mapping or params.include_artifact_mapping),
    }
    try:
        params = core.ProcessingParams.from_mapping(overrides)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    host = LocalHost(root)

    if args.file:
        try:
            html = core.convert(args.file, host)
        except RuntimeError as exc:
            print(f"Conversion failed: {exc}", file=sys.stderr)
            return core.EXIT_CONVERSION
        sys.stdout.write(html + "\n")
        return 0

    try:
        result = core.process_cluster(host, params)
    except OSError as exc:
        print(f"Unable to list {root}: {exc}", file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    if args.verbose:
        print(f"Converted {len(result.converted)} file(s), {len(result.failures)} failure(s)")
    if params.include_artifact_mapping:
        for source, target in sorted(result.artifacts):
            print(f"{source} -> {target}")

    return 0 if result.ok else core.EXIT_CONVERSION


if __name__ == "__main__":
    raise SystemExit(main())
