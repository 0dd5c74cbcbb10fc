"""Command line interface for generating images from a text prompt."""
from __future__ import annotations

import argparse
import logging
import os
import pathlib
import sys
from typing import Iterable, Mapping, Optional, Tuple

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from imago import __version__
from imago.gemini import (
    DEFAULT_MODEL,
    DEFAULT_READ_TIMEOUT,
    GeminiClient,
    GenerationFailure,
    GenerationRequest,
    build_candidates,
    generate,
    mask_secret,
)
from imago.images import (
    PreviewError,
    display_in_terminal,
    extension_for_mime,
    resolve_output_path,
    save_image,
)

API_KEY_ENV = "GEMINI_API_KEY"
DEFAULT_PREVIEW_WIDTH = 60
LOG_LEVEL_NAMES = {
    "CRITICAL",
    "ERROR",
    "WARNING",
    "INFO",
    "DEBUG",
}
EXIT_INTERRUPTED = 130

EPILOG = f"""\
examples:
  imago "a beautiful sunset over mountains"
  imago "cyberpunk city at night" -o ./images/
  imago "abstract art" --width 80 --no-preview

environment:
  {API_KEY_ENV}    Your Google Gemini API key (overridden by --api-key).
"""

logger = logging.getLogger("imago.cli")


def normalize_log_level(value: str) -> str:
    """Normalize user-provided log level strings."""

    upper_value = value.strip().upper()
    if upper_value == "WARN":
        upper_value = "WARNING"
    if upper_value not in LOG_LEVEL_NAMES:
        valid = ", ".join(sorted(LOG_LEVEL_NAMES))
        raise argparse.ArgumentTypeError(f"Invalid log level '{value}'. Choose one of: {valid}")
    return upper_value


def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"'{value}' is not an integer") from exc
    if number <= 0:
        raise argparse.ArgumentTypeError("must be greater than 0")
    return number


def positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"'{value}' is not a number") from exc
    if number <= 0:
        raise argparse.ArgumentTypeError("must be greater than 0")
    return number


def effective_log_level(args: argparse.Namespace) -> str:
    if args.verbose:
        return "DEBUG"
    if args.quiet:
        return "ERROR"
    return args.log_level or "WARNING"


def configure_logging(level_name: str, *, color: bool = True) -> None:
    """Configure root logging once based on the requested level."""

    level = getattr(logging, level_name, logging.WARNING)
    if color:
        logging.basicConfig(
            level=level,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        )
    else:
        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            stream=sys.stderr,
        )


def load_env_file(path: pathlib.Path) -> None:
    """Load environment variables from a .env style file if it exists."""

    if not path.exists() or not path.is_file():
        return

    for line in path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if stripped.startswith("export "):
            stripped = stripped[len("export "):].lstrip()
        if "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        key = key.strip()
        if not key:
            continue
        value = value.strip().strip("\"'")
        os.environ.setdefault(key, value)


def resolve_api_key(
    explicit: Optional[str], environ: Optional[Mapping[str, str]] = None
) -> Optional[str]:
    """Return the API key from the flag, falling back to the environment."""

    if explicit and explicit.strip():
        return explicit.strip()
    env = os.environ if environ is None else environ
    value = env.get(API_KEY_ENV, "").strip()
    return value or None


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="imago",
        description=(
            "Generate images using the Gemini image generation API with instant "
            "terminal preview."
        ),
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "prompt",
        metavar="PROMPT",
        help="Description of the image to generate.",
    )
    parser.add_argument(
        "-o",
        "--output",
        metavar="PATH",
        default=None,
        help="Output directory or file path for the generated image.",
    )
    parser.add_argument(
        "-w",
        "--width",
        metavar="COLUMNS",
        type=positive_int,
        default=DEFAULT_PREVIEW_WIDTH,
        help="Width of the preview in terminal columns (default: %(default)s).",
    )
    parser.add_argument(
        "-H",
        "--height",
        metavar="ROWS",
        type=positive_int,
        default=None,
        help="Height of the preview in terminal rows (optional).",
    )
    parser.add_argument(
        "--no-preview",
        action="store_true",
        help="Disable terminal preview after generation.",
    )
    parser.add_argument(
        "-m",
        "--model",
        metavar="MODEL",
        default=DEFAULT_MODEL,
        help="Gemini model to try first (default: %(default)s).",
    )
    parser.add_argument(
        "-k",
        "--api-key",
        metavar="KEY",
        default=None,
        help=f"Gemini API key (overrides the {API_KEY_ENV} environment variable).",
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output.",
    )
    verbosity.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Only print errors.",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output.",
    )
    parser.add_argument(
        "--timeout",
        metavar="SECONDS",
        type=positive_float,
        default=DEFAULT_READ_TIMEOUT,
        help="Seconds to wait for each API response (default: %(default)s).",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help=f"Path to a .env file containing {API_KEY_ENV}.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        type=normalize_log_level,
        help="Logging level to emit (DEBUG, INFO, WARNING, ERROR, CRITICAL).",
    )
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    args = parser.parse_args(argv)
    if not args.prompt.strip():
        parser.error("PROMPT must not be empty")
    return args


def build_consoles(*, color: bool, quiet: bool) -> Tuple[Console, Console]:
    out = Console(no_color=not color, highlight=False, soft_wrap=True, quiet=quiet)
    err = Console(stderr=True, no_color=not color, highlight=False, soft_wrap=True)
    return out, err


def print_generating(console: Console, prompt: str) -> None:
    console.print(f"[bold blue]Generating:[/] {escape(prompt)}")


def print_success(console: Console, path: pathlib.Path) -> None:
    console.print("[bold green]Success![/] Saved to:")
    console.print(f"   [cyan underline]{escape(str(path))}[/]")


def print_warning(console: Console, message: str) -> None:
    console.print(f"[yellow]Warning: {escape(message)}[/]")


def print_error(console: Console, message: object) -> None:
    console.print(f"[bold red]Error:[/] [red]{escape(str(message))}[/]")


def run(args: argparse.Namespace, out: Console, err: Console) -> int:
    env_path = pathlib.Path(args.env_file)
    try:
        load_env_file(env_path)
    except (OSError, UnicodeDecodeError) as exc:
        print_error(err, f"Could not read env file {env_path}: {exc}")
        return 1

    api_key = resolve_api_key(args.api_key)
    if not api_key:
        print_error(
            err,
            f"API key not found. Please set {API_KEY_ENV} environment variable or pass --api-key",
        )
        return 1

    request = GenerationRequest(prompt=args.prompt, model=args.model, api_key=api_key)
    candidates = build_candidates(request.model)
    logger.info("Using API key %s", mask_secret(api_key))
    if args.verbose:
        out.print(f"Using model: {request.model}")
        logger.debug("Candidate models: %s", ", ".join(candidates))

    print_generating(out, request.prompt)
    with GeminiClient(api_key, read_timeout=args.timeout) as client:
        result = generate(request, candidates, client=client)

    if isinstance(result, GenerationFailure):
        logger.debug("Generation failed kind=%s attempted=%s", result.kind.value, result.attempted)
        print_error(err, result)
        return 1

    image = result.image
    if args.verbose:
        out.print(f"Image generated: {len(image.data)} bytes from {image.model}")

    output_path = resolve_output_path(args.output, extension_for_mime(image.mime_type))
    try:
        save_image(image.data, output_path)
    except OSError as exc:
        print_error(err, f"File I/O error: {exc}")
        return 1
    print_success(out, output_path)

    if not args.no_preview and not args.quiet:
        out.print()
        try:
            display_in_terminal(image.data, args.width, args.height, console=out)
        except PreviewError as exc:
            print_warning(out, f"Could not display preview: {exc}")
    return 0


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)

    color = not args.no_color and not os.environ.get("NO_COLOR")
    configure_logging(effective_log_level(args), color=color)
    out, err = build_consoles(color=color, quiet=args.quiet)

    try:
        return run(args, out, err)
    except KeyboardInterrupt:
        print_error(err, "Interrupted")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
