"""Saving generated images and previewing them in the terminal."""
from __future__ import annotations

import base64
import datetime as dt
import enum
import io
import logging
import os
import pathlib
import random
import shutil
import string
import subprocess
import tempfile
from typing import Mapping, Optional, Union

from PIL import Image, UnidentifiedImageError
from rich.console import Console
from rich.style import Style
from rich.text import Text

from imago.gemini import ImagoError

IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp"}
MIME_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
}
UPPER_HALF_BLOCK = "▀"
KITTY_CHUNK_SIZE = 4096

logger = logging.getLogger("imago.images")

PathLike = Union[str, pathlib.Path]


class PreviewError(ImagoError):
    """Raised when the image cannot be shown in the terminal."""


def extension_for_mime(mime_type: Optional[str]) -> str:
    if not mime_type:
        return "png"
    return MIME_EXTENSIONS.get(mime_type.split(";", 1)[0].strip().lower(), "png")


def generate_filename(extension: str = "png") -> str:
    """Build a ``YYYYMMDDHHMM_<random>`` filename for a new image."""

    timestamp = dt.datetime.now().strftime("%Y%m%d%H%M")
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(random.choice(alphabet) for _ in range(8))
    return f"{timestamp}_{suffix}.{extension.lstrip('.')}"


def resolve_output_path(output: Optional[PathLike], extension: str = "png") -> pathlib.Path:
    """Pick the file the image is written to.

    Directories (existing ones, or any path ending in a separator) receive a
    generated filename. Explicit file paths keep a known image extension;
    anything else gets ``extension`` appended or swapped in.
    """

    filename = generate_filename(extension)
    if output is None:
        return pathlib.Path(filename)

    raw = os.fspath(output)
    path = pathlib.Path(raw)
    if path.is_dir() or raw.endswith(("/", os.sep)):
        return path / filename
    if path.suffix.lower() in IMAGE_EXTENSIONS:
        return path
    return path.with_suffix(f".{extension.lstrip('.')}")


def save_image(content: bytes, path: pathlib.Path) -> pathlib.Path:
    if not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    logger.debug("Wrote %d bytes to %s", len(content), path)
    return path


def has_viu() -> bool:
    return shutil.which("viu") is not None


def _preview_with_viu(content: bytes, width: int, height: Optional[int]) -> None:
    with tempfile.TemporaryDirectory(prefix="imago_preview_") as tmp_dir:
        tmp_path = pathlib.Path(tmp_dir) / generate_filename()
        tmp_path.write_bytes(content)
        command = ["viu", "-w", str(width)]
        if height is not None:
            command.extend(["-h", str(height)])
        command.append(str(tmp_path))
        try:
            completed = subprocess.run(command, check=False)
        except OSError as exc:
            raise PreviewError(f"Failed to launch viu: {exc}") from exc
    if completed.returncode != 0:
        raise PreviewError("viu preview process exited with non-zero status")


class TerminalSupport(enum.Enum):
    KITTY = "kitty"
    ITERM2 = "iterm2"
    HALF_BLOCKS = "half_blocks"


def detect_terminal_support(environ: Optional[Mapping[str, str]] = None) -> TerminalSupport:
    """Pick the richest graphics protocol the terminal advertises."""

    env = os.environ if environ is None else environ
    term = env.get("TERM", "").lower()
    term_program = env.get("TERM_PROGRAM", "")

    if env.get("KITTY_WINDOW_ID") or "kitty" in term:
        return TerminalSupport.KITTY
    if term_program == "iTerm.app" or env.get("LC_TERMINAL") == "iTerm2":
        return TerminalSupport.ITERM2
    if "wezterm" in term or term_program == "WezTerm":
        return TerminalSupport.KITTY
    return TerminalSupport.HALF_BLOCKS


def _load_image(content: bytes) -> Image.Image:
    try:
        with Image.open(io.BytesIO(content)) as opened:
            return opened.convert("RGB")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise PreviewError(f"Failed to load image: {exc}") from exc


def kitty_escape(content: bytes, width: int, height: Optional[int] = None) -> str:
    """Encode an image for the Kitty graphics protocol.

    Kitty only accepts PNG for direct transmission, so the image is re-encoded
    and sent base64 in chunks, with ``m=1`` on every chunk but the last.
    """

    image = _load_image(content)
    buffer = io.BytesIO()
    try:
        image.save(buffer, format="PNG")
    except (OSError, ValueError) as exc:
        raise PreviewError(f"Failed to encode image: {exc}") from exc
    encoded = base64.standard_b64encode(buffer.getvalue()).decode("ascii")
    chunks = [
        encoded[start:start + KITTY_CHUNK_SIZE]
        for start in range(0, len(encoded), KITTY_CHUNK_SIZE)
    ] or [""]

    control = f"a=T,f=100,c={width}"
    if height is not None:
        control += f",r={height}"
    pieces = []
    for index, chunk in enumerate(chunks):
        more = 1 if index < len(chunks) - 1 else 0
        keys = f"{control},m={more}" if index == 0 else f"m={more}"
        pieces.append(f"\x1b_G{keys};{chunk}\x1b\\")
    return "".join(pieces)


def iterm_escape(content: bytes, width: int, height: Optional[int] = None) -> str:
    """Encode an image as an iTerm2 inline image (OSC 1337)."""

    _load_image(content)
    encoded = base64.standard_b64encode(content).decode("ascii")
    args = f"inline=1;size={len(content)};width={width}"
    if height is not None:
        args += f";height={height}"
    args += ";preserveAspectRatio=1"
    return f"\x1b]1337;File={args}:{encoded}\x07"


def render_half_blocks(content: bytes, width: int, height: Optional[int] = None) -> Text:
    """Render image bytes as truecolor half-block characters.

    Each character cell shows two vertically stacked pixels: the foreground
    colour is the upper pixel and the background colour the lower one.
    """

    image = _load_image(content)

    src_width, src_height = image.size
    columns = max(1, min(width, src_width))
    pixel_rows = max(2, round(src_height * columns / src_width))
    if height is not None and pixel_rows > height * 2:
        pixel_rows = height * 2
        columns = max(1, round(src_width * pixel_rows / src_height))
    if pixel_rows % 2:
        pixel_rows += 1
    try:
        image = image.resize((columns, pixel_rows))
    except (OSError, ValueError) as exc:
        raise PreviewError(f"Failed to resize image: {exc}") from exc
    pixels = image.load()

    text = Text()
    for y in range(0, pixel_rows, 2):
        for x in range(columns):
            top = "rgb({},{},{})".format(*pixels[x, y])
            bottom = "rgb({},{},{})".format(*pixels[x, y + 1])
            text.append(UPPER_HALF_BLOCK, style=Style(color=top, bgcolor=bottom))
        if y + 2 < pixel_rows:
            text.append("\n")
    return text


def display_in_terminal(
    content: bytes,
    width: int,
    height: Optional[int] = None,
    *,
    console: Optional[Console] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> None:
    """Show an image in the terminal.

    The ``viu`` binary is preferred. Without it the Kitty graphics protocol or
    iTerm2 inline images are used when the terminal advertises them, and
    half blocks otherwise.
    """

    if width <= 0:
        raise PreviewError("Width must be greater than 0")
    if has_viu():
        logger.debug("Previewing with viu width=%d height=%s", width, height)
        _preview_with_viu(content, width, height)
        return

    console = console or Console()
    if not console.is_terminal:
        raise PreviewError("Output is not a terminal")

    support = detect_terminal_support(environ)
    logger.debug("Previewing with %s width=%d height=%s", support.value, width, height)
    if support is TerminalSupport.HALF_BLOCKS:
        console.print(render_half_blocks(content, width, height))
        return

    if support is TerminalSupport.KITTY:
        sequence = kitty_escape(content, width, height)
    else:
        sequence = iterm_escape(content, width, height)
    console.file.write(sequence + "\n")
    console.file.flush()
