"""Atomic file output for exported programs and overlays, plus YAML input.

A machine controller may stream G-code straight out of the export
directory, so every writer here goes through :func:`_atomic_target`:
data lands in a sibling tmp file, is fsynced, and only then renamed over
the target.  Readers see either the old file or the new one.

Usage:
    from cncai.utils import fs
    fs.atomic_write_text("outputs/part.gcode", program.text)
    fs.atomic_save_image(overlay_rgb, "outputs/part_overlay.png")
    raw = fs.load_yaml("cnc_control/configs/machine.yaml")
"""

import contextlib
import os
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union

import numpy as np
import yaml
from PIL import Image

PathLike = Union[str, Path]


def ensure_dir(p: PathLike) -> Path:
    """Create ``p`` (and parents) if missing; return it as a Path."""
    p = Path(p)
    p.mkdir(parents=True, exist_ok=True)
    return p


@contextlib.contextmanager
def _atomic_target(path: Path, tmp_path: Path) -> Iterator[Path]:
    """Yield ``tmp_path`` to write into, then rename it over ``path``.

    The tmp file is removed if the body or the rename fails.  OS-level
    failures surface as RuntimeError naming the target.
    """
    try:
        yield tmp_path
        tmp_path.replace(path)
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise RuntimeError(f"Failed to write {path} atomically: {e}") from e
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def atomic_write_bytes(path: PathLike, data: bytes) -> None:
    """Write ``data`` to ``path`` atomically.

    Parameters
    ----------
    path : str or Path
        Target file; parent directories are created
    data : bytes
        Complete file contents

    Raises
    ------
    RuntimeError
        If writing, syncing or renaming fails
    """
    path = Path(path)
    ensure_dir(path.parent)
    with _atomic_target(path, path.with_name(path.name + ".tmp")) as tmp:
        with open(tmp, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())


def atomic_write_text(path: PathLike, text: str, encoding: str = "ascii") -> None:
    """Encode and write ``text`` atomically.

    The default is ASCII because controllers choke on anything else in a
    G-code stream; the encode happens before any file is touched, so a
    UnicodeEncodeError leaves the target untouched.
    """
    atomic_write_bytes(path, text.encode(encoding))


def atomic_save_image(
    img: np.ndarray,
    path: PathLike,
    pil_kwargs: Optional[Dict[str, Any]] = None
) -> None:
    """Save an image array atomically; the format follows the extension.

    Parameters
    ----------
    img : np.ndarray
        (H, W) gray, (H, W, 1) or (H, W, 3) RGB.  Non-uint8 data is
        clipped to [0, 255].  Overlays from OpenCV are BGR and must be
        converted by the caller.
    path : str or Path
        Target file
    pil_kwargs : dict, optional
        Passed to ``PIL.Image.save`` (e.g. ``{"optimize": True}``)
    """
    path = Path(path)
    ensure_dir(path.parent)

    arr = np.asarray(img)
    if arr.dtype != np.uint8:
        arr = np.clip(arr, 0, 255).astype(np.uint8)
    if arr.ndim == 3 and arr.shape[2] == 1:
        arr = arr[..., 0]
    pil_img = Image.fromarray(np.ascontiguousarray(arr))

    # PIL infers the format from the last suffix
    tmp_path = path.with_name(f"{path.stem}.tmp{path.suffix}")
    with _atomic_target(path, tmp_path) as tmp:
        try:
            pil_img.save(tmp, **(pil_kwargs or {}))
        except ValueError as e:
            raise RuntimeError(f"Cannot encode image as {path.suffix!r}: {e}") from e


def load_yaml(path: PathLike) -> Any:
    """Parse a YAML file with ``yaml.safe_load``.

    Returns whatever the document holds (``None`` for an empty file);
    callers check the shape.

    Raises
    ------
    FileNotFoundError
        If ``path`` does not exist
    yaml.YAMLError
        On a syntax error; the message names the file
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"YAML file not found: {path}")
    text = path.read_text(encoding='utf-8')
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"{path}: {e}") from e
