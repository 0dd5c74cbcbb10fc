import base64
import io
import pathlib
import re
import subprocess

import pytest
from PIL import Image
from rich.console import Console

from conftest import oversized_png
from imago import images
from imago.images import (
    PreviewError,
    TerminalSupport,
    detect_terminal_support,
    display_in_terminal,
    extension_for_mime,
    generate_filename,
    iterm_escape,
    kitty_escape,
    render_half_blocks,
    resolve_output_path,
    save_image,
)

FILENAME_RE = re.compile(r"^\d{12}_[a-z0-9]{8}\.png$")


def _png_bytes(size=(4, 4), color=(255, 0, 0)):
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def test_generate_filename_format():
    assert FILENAME_RE.match(generate_filename())
    assert generate_filename("jpg").endswith(".jpg")


def test_resolve_output_path_defaults_to_cwd_filename():
    path = resolve_output_path(None)
    assert path.parent == pathlib.Path(".")
    assert FILENAME_RE.match(path.name)


def test_resolve_output_path_existing_directory(tmp_path):
    path = resolve_output_path(tmp_path)
    assert path.parent == tmp_path
    assert FILENAME_RE.match(path.name)


def test_resolve_output_path_trailing_separator_is_directory(tmp_path):
    target = str(tmp_path / "new-dir") + "/"
    path = resolve_output_path(target)
    assert path.parent == tmp_path / "new-dir"


@pytest.mark.parametrize("name", ["out.png", "out.JPG", "out.jpeg", "out.gif", "out.webp"])
def test_resolve_output_path_keeps_image_extension(tmp_path, name):
    assert resolve_output_path(tmp_path / name) == tmp_path / name


def test_resolve_output_path_adds_extension(tmp_path):
    assert resolve_output_path(tmp_path / "picture") == tmp_path / "picture.png"
    assert resolve_output_path(tmp_path / "notes.txt", "jpg") == tmp_path / "notes.jpg"


@pytest.mark.parametrize(
    "mime, expected",
    [
        ("image/png", "png"),
        ("image/jpeg", "jpg"),
        ("image/webp", "webp"),
        ("IMAGE/GIF", "gif"),
        ("image/tiff", "png"),
        (None, "png"),
    ],
)
def test_extension_for_mime(mime, expected):
    assert extension_for_mime(mime) == expected


def test_save_image_creates_parent_directories(tmp_path):
    target = tmp_path / "a" / "b" / "image.png"
    save_image(b"data", target)
    assert target.read_bytes() == b"data"


def test_render_half_blocks_dimensions():
    text = render_half_blocks(_png_bytes((8, 8)), width=4)
    lines = text.plain.split("\n")
    assert len(lines) == 2
    assert all(line == images.UPPER_HALF_BLOCK * 4 for line in lines)


def test_render_half_blocks_respects_height():
    text = render_half_blocks(_png_bytes((10, 40)), width=10, height=5)
    lines = text.plain.split("\n")
    assert len(lines) <= 5


def test_render_half_blocks_rejects_garbage():
    with pytest.raises(PreviewError):
        render_half_blocks(b"not an image", width=10)


def test_display_uses_viu_when_available(monkeypatch):
    commands = []

    def fake_run(command, check):
        commands.append(command)
        assert pathlib.Path(command[-1]).read_bytes() == b"img"
        return subprocess.CompletedProcess(command, 0)

    monkeypatch.setattr(images, "has_viu", lambda: True)
    monkeypatch.setattr(images.subprocess, "run", fake_run)

    display_in_terminal(b"img", 40, 10)

    assert commands[0][:5] == ["viu", "-w", "40", "-h", "10"]
    assert not pathlib.Path(commands[0][-1]).exists()


def test_display_viu_failure_raises_preview_error(monkeypatch):
    monkeypatch.setattr(images, "has_viu", lambda: True)
    monkeypatch.setattr(
        images.subprocess, "run", lambda command, check: subprocess.CompletedProcess(command, 1)
    )

    with pytest.raises(PreviewError):
        display_in_terminal(b"img", 40)


def test_display_falls_back_to_half_blocks(monkeypatch):
    monkeypatch.setattr(images, "has_viu", lambda: False)
    buffer = io.StringIO()
    console = Console(file=buffer, force_terminal=True, color_system="truecolor", width=120)

    display_in_terminal(_png_bytes(), 4, console=console, environ={})

    assert images.UPPER_HALF_BLOCK in buffer.getvalue()


def test_display_without_terminal_raises(monkeypatch):
    monkeypatch.setattr(images, "has_viu", lambda: False)
    console = Console(file=io.StringIO(), force_terminal=False)

    with pytest.raises(PreviewError):
        display_in_terminal(_png_bytes(), 4, console=console)


def test_render_half_blocks_rejects_oversized_image():
    with pytest.raises(PreviewError):
        render_half_blocks(oversized_png(), width=10)


def test_display_oversized_image_raises_preview_error(monkeypatch):
    monkeypatch.setattr(images, "has_viu", lambda: False)
    console = Console(file=io.StringIO(), force_terminal=True)

    with pytest.raises(PreviewError):
        display_in_terminal(oversized_png(), 40, console=console, environ={})


@pytest.mark.parametrize(
    "environ, expected",
    [
        ({"TERM": "xterm-kitty"}, TerminalSupport.KITTY),
        ({"KITTY_WINDOW_ID": "1", "TERM": "xterm-256color"}, TerminalSupport.KITTY),
        ({"TERM": "wezterm"}, TerminalSupport.KITTY),
        ({"TERM_PROGRAM": "WezTerm"}, TerminalSupport.KITTY),
        ({"TERM_PROGRAM": "iTerm.app"}, TerminalSupport.ITERM2),
        ({"LC_TERMINAL": "iTerm2"}, TerminalSupport.ITERM2),
        ({"TERM": "xterm-256color", "TERM_PROGRAM": "Apple_Terminal"}, TerminalSupport.HALF_BLOCKS),
        ({}, TerminalSupport.HALF_BLOCKS),
    ],
)
def test_detect_terminal_support(environ, expected):
    assert detect_terminal_support(environ) is expected


def test_kitty_escape_single_chunk():
    sequence = kitty_escape(_png_bytes(), 40, 10)

    assert sequence.startswith("\x1b_Ga=T,f=100,c=40,r=10,m=0;")
    assert sequence.endswith("\x1b\\")
    assert sequence.count("\x1b_G") == 1


def test_kitty_escape_splits_large_payload(monkeypatch):
    monkeypatch.setattr(images, "KITTY_CHUNK_SIZE", 16)

    sequence = kitty_escape(_png_bytes(), 40)

    pieces = sequence.split("\x1b\\")[:-1]
    assert len(pieces) > 2
    assert pieces[0].startswith("\x1b_Ga=T,f=100,c=40,m=1;")
    assert all(piece.startswith("\x1b_Gm=1;") for piece in pieces[1:-1])
    assert pieces[-1].startswith("\x1b_Gm=0;")
    payload = "".join(piece.split(";", 1)[1] for piece in pieces)
    assert Image.open(io.BytesIO(base64.b64decode(payload))).size == (4, 4)


def test_iterm_escape_embeds_original_bytes():
    content = _png_bytes()

    sequence = iterm_escape(content, 40, 12)

    encoded = base64.b64encode(content).decode("ascii")
    assert sequence == (
        f"\x1b]1337;File=inline=1;size={len(content)};width=40;height=12;"
        f"preserveAspectRatio=1:{encoded}\x07"
    )


@pytest.mark.parametrize(
    "environ, marker",
    [({"TERM": "xterm-kitty"}, "\x1b_G"), ({"TERM_PROGRAM": "iTerm.app"}, "\x1b]1337;File=")],
)
def test_display_uses_graphics_protocol(monkeypatch, environ, marker):
    monkeypatch.setattr(images, "has_viu", lambda: False)
    buffer = io.StringIO()
    console = Console(file=buffer, force_terminal=True)

    display_in_terminal(_png_bytes(), 20, console=console, environ=environ)

    assert marker in buffer.getvalue()
    assert images.UPPER_HALF_BLOCK not in buffer.getvalue()
