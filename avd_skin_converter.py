#!/usr/bin/env python3
"""Utilities for converting Android emulator (AVD) device skins into packaged skin archives."""

from __future__ import annotations

import abc
import argparse
import dataclasses
import enum
import io
import logging
import math
import os
import re
import struct
import subprocess
import sys
import tempfile
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Mapping, NoReturn, Optional, Sequence, Tuple

import cv2
import numpy as np
import structlog
from PIL import Image

LOGGER_NAME = "avd_skin_converter"
GENERATOR_NAME = "avd-skin-converter"
LAYOUT_FILE_NAME = "layout"
HARDWARE_PROFILE_NAME = "hardware.ini"
OUTPUT_SUFFIX = ".skin"
DEFAULT_LCD_WIDTH = 1080
DEFAULT_LCD_HEIGHT = 1920
DEFAULT_LCD_DENSITY = 420.0
FALLBACK_PIXEL_RATIO = 6.0
FALLBACK_TABLET_DENSITY = 320.0
MILLIMETERS_PER_INCH = 25.4
TABLET_INCH_THRESHOLD = 6.5
WEBP_TOOL = "dwebp"
WEBP_EXTENSIONS = {".webp"}
PORTRAIT_FRAME_ENTRY = "skin.png"
LANDSCAPE_FRAME_ENTRY = "skin_l.png"
PORTRAIT_MAP_ENTRY = "skin_map.png"
LANDSCAPE_MAP_ENTRY = "skin_map_l.png"
PROPERTIES_ENTRY = "skin.properties"
TABLET_OVERRIDE_NAMES = "tablet,android,android-tablet"
PHONE_OVERRIDE_NAMES = "phone,android,android-phone"
SYSTEM_FONT_FAMILY = "Roboto"
MONOSPACE_FONT_FAMILY = "Droid Sans Mono"
SMALL_FONT_SIZE = 11
MEDIUM_FONT_SIZE = 14
LARGE_FONT_SIZE = 20
LANDSCAPE_MARKERS = ("land", "horz")
PORTRAIT_MARKERS = ("port", "vert")
IMAGE_KEYS = {"name", "image", "filename"}
IMAGE_BLOCK_HINTS = ("image", "background", "foreground", "frame", "skin", "device", "phone", "tablet", "onion", "overlay")
FRAME_HINTS = ("device", "frame", "skin", "phone", "tablet", "background", "back", "shell", "body", "fore")
CONTROL_HINTS = ("button", "control", "icon", "touch", "shadow", "onion")
RECTANGLE_KEYS = ("x", "y", "width", "height")
PROPERTY_LINE = re.compile(r"^([^=:\s]+)\s*(?:[=:]\s*|\s+)(.*)$")

logger = structlog.get_logger(LOGGER_NAME)


class SkinConversionError(Exception):
    """Base class for every failure that aborts a skin conversion."""


class UsageError(SkinConversionError):
    pass


class ValidationError(SkinConversionError):
    pass


class LayoutSyntaxError(ValidationError):
    pass


class DecodeError(SkinConversionError):
    pass


class ExternalToolError(DecodeError):
    pass


class ArchiveWriteError(SkinConversionError):
    pass


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def configure_logging(*, verbose: bool = False, log_json: bool = False) -> None:
    """Send converter events to stderr, one line each, keeping stdout for the archive path."""
    timestamper = structlog.processors.TimeStamper(fmt="iso")
    pre_chain: List[structlog.types.Processor] = [structlog.stdlib.add_log_level, timestamper]

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    renderer: structlog.types.Processor
    if log_json:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    handler = logging.StreamHandler(sys.stderr)
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )
    handler.setFormatter(formatter)

    converter_logger = logging.getLogger(LOGGER_NAME)
    converter_logger.handlers[:] = [handler]
    converter_logger.propagate = False
    converter_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


# ---------------------------------------------------------------------------
# Hardware profile
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class HardwareProfile:
    width_pixels: int = DEFAULT_LCD_WIDTH
    height_pixels: int = DEFAULT_LCD_HEIGHT
    density_dpi: float = DEFAULT_LCD_DENSITY

    def pixel_ratio(self) -> float:
        """Pixels per millimetre of the device screen."""
        if self.density_dpi <= 0:
            return FALLBACK_PIXEL_RATIO
        return self.density_dpi / MILLIMETERS_PER_INCH

    def diagonal_inches(self) -> float:
        density = self.density_dpi if self.density_dpi > 0 else FALLBACK_TABLET_DENSITY
        return math.hypot(self.width_pixels / density, self.height_pixels / density)

    def is_tablet_like(self, threshold_inches: float = TABLET_INCH_THRESHOLD) -> bool:
        return self.diagonal_inches() >= threshold_inches


def parse_properties_text(text: str) -> Dict[str, str]:
    """Parse Java-properties style ``key=value`` lines.

    ``key: value`` and ``key value`` are accepted too. Lines starting with
    ``#`` or ``!`` are comments.
    """
    values: Dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line[0] in "#!":
            continue
        match = PROPERTY_LINE.match(line)
        if match:
            values[match.group(1)] = match.group(2).strip()
    return values


def _int_or_default(value: str | None, default: int) -> int:
    if not value:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _float_or_default(value: str | None, default: float) -> float:
    if not value:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def hardware_profile_from_properties(values: Mapping[str, str]) -> HardwareProfile:
    density = _float_or_default(
        values.get("hw.lcd.density"),
        _float_or_default(values.get("hw.lcd.pixelDensity"), DEFAULT_LCD_DENSITY),
    )
    return HardwareProfile(
        width_pixels=_int_or_default(values.get("hw.lcd.width"), DEFAULT_LCD_WIDTH),
        height_pixels=_int_or_default(values.get("hw.lcd.height"), DEFAULT_LCD_HEIGHT),
        density_dpi=density,
    )


def read_hardware_profile(profile_path: Path | None) -> HardwareProfile:
    if profile_path is None or not profile_path.is_file():
        return HardwareProfile()
    try:
        text = profile_path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise ValidationError(f"Failed to read {profile_path}: {exc}") from exc
    return hardware_profile_from_properties(parse_properties_text(text))


def locate_hardware_profile(skin_dir: Path, layout_file: Path) -> Path | None:
    for candidate in (skin_dir / HARDWARE_PROFILE_NAME, layout_file.parent / HARDWARE_PROFILE_NAME):
        if candidate.is_file():
            return candidate
    return None


# ---------------------------------------------------------------------------
# Layout model
# ---------------------------------------------------------------------------


class OrientationKind(enum.Enum):
    PORTRAIT = "portrait"
    LANDSCAPE = "landscape"


@dataclasses.dataclass(frozen=True)
class DisplayArea:
    x: int
    y: int
    width: int
    height: int

    @property
    def is_usable(self) -> bool:
        return self.width > 0 and self.height > 0


@dataclasses.dataclass(frozen=True)
class OrientationDefinition:
    kind: OrientationKind
    source_image_name: str
    display: DisplayArea


@dataclasses.dataclass(frozen=True)
class LayoutDocument:
    portrait: OrientationDefinition | None
    landscape: OrientationDefinition | None

    def has_both_orientations(self) -> bool:
        return self.portrait is not None and self.landscape is not None


@dataclasses.dataclass(frozen=True)
class ParseFrame:
    name: str
    orientation: OrientationKind | None
    is_part_block: bool
    is_device_part: bool = False

    @classmethod
    def open(cls, name: str) -> "ParseFrame":
        name = name.strip()
        return cls(name=name, orientation=detect_orientation(name), is_part_block=name.lower().startswith("part"))


@dataclasses.dataclass(frozen=True)
class ImageCandidate:
    name: str
    pixel_area: int
    is_frame_like: bool
    is_control_like: bool


def detect_orientation(block_name: str) -> OrientationKind | None:
    lower = block_name.lower()
    if any(marker in lower for marker in LANDSCAPE_MARKERS):
        return OrientationKind.LANDSCAPE
    if any(marker in lower for marker in PORTRAIT_MARKERS):
        return OrientationKind.PORTRAIT
    return None


def candidate_rank(candidate: ImageCandidate) -> Tuple[bool, bool, int, str]:
    """Sort key where the smallest rank is the best source image.

    Whole-device artwork that isn't a control comes first, then anything
    that isn't a control, then the larger area, then the smaller name.
    """
    preferred_frame = candidate.is_frame_like and not candidate.is_control_like
    return (not preferred_frame, candidate.is_control_like, -max(candidate.pixel_area, 0), candidate.name)


def select_better_candidate(current: ImageCandidate | None, challenger: ImageCandidate) -> ImageCandidate:
    if current is None or candidate_rank(challenger) < candidate_rank(current):
        return challenger
    return current


def build_image_candidate(name: str, stack: Sequence[ParseFrame], pixel_area: int) -> ImageCandidate:
    texts = [frame.name.lower() for frame in stack]
    texts.append(name.lower())
    return ImageCandidate(
        name=name,
        pixel_area=pixel_area,
        is_frame_like=any(hint in text for text in texts for hint in FRAME_HINTS),
        is_control_like=any(hint in text for text in texts for hint in CONTROL_HINTS),
    )


# ---------------------------------------------------------------------------
# Layout parser
# ---------------------------------------------------------------------------


AreaProbe = Callable[[str], int]


def parse_layout_int(value: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise LayoutSyntaxError(f"Invalid integer value '{value}' in layout file") from exc


@dataclasses.dataclass(frozen=True)
class BaseDisplay:
    """Display rectangle declared under ``device { display { ... } }``."""

    x: int | None = None
    y: int | None = None
    width: int | None = None
    height: int | None = None

    def assign(self, key: str, value: str) -> "BaseDisplay":
        if key not in RECTANGLE_KEYS:
            return self
        return dataclasses.replace(self, **{key: parse_layout_int(value)})


@dataclasses.dataclass(frozen=True)
class OrientationAccumulator:
    best_candidate: ImageCandidate | None = None
    display_x: int | None = None
    display_y: int | None = None
    display_width: int | None = None
    display_height: int | None = None
    offset_x: int | None = None
    offset_y: int | None = None
    rotation: int | None = None

    def consider(self, candidate: ImageCandidate) -> "OrientationAccumulator":
        return dataclasses.replace(self, best_candidate=select_better_candidate(self.best_candidate, candidate))

    def with_display_value(self, key: str, value: str) -> "OrientationAccumulator":
        if key not in RECTANGLE_KEYS:
            return self
        return dataclasses.replace(self, **{f"display_{key}": parse_layout_int(value)})

    def with_part_value(self, key: str, value: str) -> "OrientationAccumulator":
        if key in ("x", "y"):
            return dataclasses.replace(self, **{f"offset_{key}": parse_layout_int(value)})
        if key == "rotation":
            return dataclasses.replace(self, rotation=parse_layout_int(value))
        return self

    @property
    def normalized_rotation(self) -> int:
        return (self.rotation or 0) % 4

    def build(self, kind: OrientationKind, base: BaseDisplay) -> OrientationDefinition:
        if self.best_candidate is None:
            raise ValidationError(f"Layout definition for {kind.name} is incomplete")
        width = self.display_width if self.display_width is not None else base.width
        height = self.display_height if self.display_height is not None else base.height
        if width is None or height is None:
            raise ValidationError(f"Layout definition for {kind.name} is missing display dimensions")
        if self.normalized_rotation % 2 == 1:
            width, height = height, width
        x = self.display_x if self.display_x is not None else (base.x or 0)
        y = self.display_y if self.display_y is not None else (base.y or 0)
        return OrientationDefinition(
            kind=kind,
            source_image_name=self.best_candidate.name,
            display=DisplayArea(x + (self.offset_x or 0), y + (self.offset_y or 0), width, height),
        )


@dataclasses.dataclass(frozen=True)
class ParserState:
    stack: Tuple[ParseFrame, ...] = ()
    base: BaseDisplay = BaseDisplay()
    portrait: OrientationAccumulator | None = None
    landscape: OrientationAccumulator | None = None

    def accumulator(self, kind: OrientationKind) -> OrientationAccumulator | None:
        return getattr(self, kind.value)

    def with_accumulator(self, kind: OrientationKind, accumulator: OrientationAccumulator) -> "ParserState":
        return dataclasses.replace(self, **{kind.value: accumulator})


def strip_comment(line: str) -> str:
    cuts = [index for index in (line.find("//"), line.find("#")) if index >= 0]
    return line[: min(cuts)] if cuts else line


def unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def split_key_value(line: str) -> Tuple[str, str] | None:
    parts = line.replace("=", " ").split(None, 1)
    if len(parts) != 2:
        return None
    return parts[0], unquote(parts[1])


def effective_orientation(stack: Sequence[ParseFrame]) -> OrientationKind | None:
    for frame in reversed(stack):
        if frame.orientation is not None:
            return frame.orientation
    return None


def in_device_display_block(stack: Sequence[ParseFrame]) -> bool:
    return len(stack) >= 2 and stack[-1].name.lower() == "display" and stack[-2].name.lower() == "device"


def in_device_part(stack: Sequence[ParseFrame]) -> bool:
    return any(frame.is_part_block and frame.is_device_part for frame in stack)


def accepts_image_key(block_name: str, key: str) -> bool:
    # "image" and "filename" always name artwork; a bare "name" only does inside an imagery block.
    if key != "name":
        return True
    lower = block_name.lower()
    return any(hint in lower for hint in IMAGE_BLOCK_HINTS)


def _flag_device_part(state: ParserState, key: str, value: str) -> ParserState:
    top = state.stack[-1]
    if not (top.is_part_block and key == "name"):
        return state
    flagged = dataclasses.replace(top, is_device_part=value.lower() == "device")
    return dataclasses.replace(state, stack=state.stack[:-1] + (flagged,))


def _apply_assignment(state: ParserState, line: str, probe: AreaProbe) -> ParserState:
    if not state.stack:
        return state
    pair = split_key_value(line)
    if pair is None:
        return state
    key, value = pair
    key = key.lower()

    orientation = effective_orientation(state.stack)
    if orientation is None:
        if in_device_display_block(state.stack):
            return dataclasses.replace(state, base=state.base.assign(key, value))
        return _flag_device_part(state, key, value)

    state = _flag_device_part(state, key, value)
    top = state.stack[-1]
    accumulator = state.accumulator(orientation) or OrientationAccumulator()
    if key in IMAGE_KEYS and accepts_image_key(top.name, key):
        accumulator = accumulator.consider(build_image_candidate(value, state.stack, probe(value)))
    elif "display" in top.name.lower():
        accumulator = accumulator.with_display_value(key, value)
    elif in_device_part(state.stack):
        accumulator = accumulator.with_part_value(key, value)
    return state.with_accumulator(orientation, accumulator)


def advance(state: ParserState, raw_line: str, probe: AreaProbe) -> ParserState:
    """Fold one layout line into the parser state."""
    line = strip_comment(raw_line).strip()
    if not line:
        return state
    if line.endswith("{"):
        return dataclasses.replace(state, stack=state.stack + (ParseFrame.open(line[:-1]),))
    if line == "}":
        return dataclasses.replace(state, stack=state.stack[:-1])
    return _apply_assignment(state, line, probe)


def finish_layout(state: ParserState) -> LayoutDocument:
    definitions: Dict[OrientationKind, OrientationDefinition | None] = {}
    for kind in OrientationKind:
        accumulator = state.accumulator(kind)
        definitions[kind] = accumulator.build(kind, state.base) if accumulator is not None else None
    return LayoutDocument(portrait=definitions[OrientationKind.PORTRAIT], landscape=definitions[OrientationKind.LANDSCAPE])


def unknown_area(name: str) -> int:
    return -1


def parse_layout(text: str, probe: AreaProbe | None = None) -> LayoutDocument:
    """Interpret the nested block layout dialect used by emulator skins.

    ``probe`` maps an image name to its pixel area (or -1 when unknown) and
    is only used to rank competing artwork candidates.
    """
    if probe is None:
        probe = unknown_area
    state = ParserState()
    for raw_line in text.splitlines():
        state = advance(state, raw_line, probe)
    return finish_layout(state)


def resolve_image_path(name: str, skin_dir: Path, layout_dir: Path | None = None) -> Path:
    candidate = skin_dir / name
    if candidate.is_file():
        return candidate
    if layout_dir is not None:
        sibling = layout_dir / name
        if sibling.is_file():
            return sibling
    return candidate


def measure_image_area(image_path: Path) -> int:
    if not image_path.is_file():
        return -1
    try:
        with Image.open(image_path) as image:
            width, height = image.size
    except OSError:
        return -1
    return width * height


def parse_layout_file(layout_file: Path, skin_dir: Path) -> LayoutDocument:
    try:
        text = layout_file.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise ValidationError(f"Failed to read layout file {layout_file}: {exc}") from exc
    layout_dir = layout_file.parent
    document = parse_layout(text, lambda name: measure_image_area(resolve_image_path(name, skin_dir, layout_dir)))
    logger.debug(
        "layout_parsed",
        layout=str(layout_file),
        portrait=document.portrait.source_image_name if document.portrait else None,
        landscape=document.landscape.source_image_name if document.landscape else None,
    )
    return document


# ---------------------------------------------------------------------------
# Image decoding
# ---------------------------------------------------------------------------


DecodeStrategy = Callable[[Path], Optional[Image.Image]]
PLUGIN_ERRORS = (OSError, EOFError, SyntaxError, ValueError, IndexError, KeyError, TypeError, struct.error)


def is_webp(image_path: Path) -> bool:
    return image_path.suffix.lower() in WEBP_EXTENSIONS


def running_headless() -> bool:
    if sys.platform.startswith(("win", "darwin")):
        return False
    return not (os.environ.get("DISPLAY") or os.environ.get("WAYLAND_DISPLAY"))


def decode_with_pillow(image_path: Path) -> Image.Image | None:
    try:
        with Image.open(image_path) as image:
            return image.convert("RGBA")
    except OSError as exc:
        logger.debug("decode_strategy_failed", strategy="pillow", path=str(image_path), error=str(exc))
        return None


def decode_from_stream(image_path: Path) -> Image.Image | None:
    """Decode from an anonymous byte stream so no file-name hint is involved."""
    try:
        with image_path.open("rb") as handle:
            stream = io.BytesIO(handle.read())
        with Image.open(stream) as image:
            return image.convert("RGBA")
    except OSError as exc:
        logger.debug("decode_strategy_failed", strategy="stream", path=str(image_path), error=str(exc))
        return None


def decode_with_registered_plugins(image_path: Path) -> Image.Image | None:
    """Try every registered Pillow format plugin whose signature check accepts the content."""
    data = image_path.read_bytes()
    prefix = data[:16]
    Image.init()
    for format_id in list(Image.ID):
        factory, accept = Image.OPEN[format_id]
        try:
            verdict = accept(prefix) if accept else True
            if not verdict or isinstance(verdict, str):
                continue
            image = factory(io.BytesIO(data), str(image_path))
            image.load()
            return image.convert("RGBA")
        except PLUGIN_ERRORS as exc:
            logger.debug("decode_strategy_failed", strategy="plugin", plugin=format_id, path=str(image_path), error=str(exc))
    return None


class WebpConverter(abc.ABC):
    """Converts a WebP file into a PNG file using some external facility."""

    executable = WEBP_TOOL

    @abc.abstractmethod
    def convert(self, source: Path, target: Path) -> str:
        """Write ``source`` as PNG to ``target`` and return the tool's combined output.

        Raises FileNotFoundError when the tool itself is not installed.
        """


class DwebpConverter(WebpConverter):
    def __init__(self, executable: str = WEBP_TOOL) -> None:
        self.executable = executable

    def convert(self, source: Path, target: Path) -> str:
        command = [self.executable, str(source), "-o", str(target)]
        result = subprocess.run(command, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, check=False)
        output = result.stdout.decode(errors="ignore").strip()
        if result.returncode != 0:
            detail = f": {output}" if output else ""
            raise ExternalToolError(
                f"{self.executable} exited with status {result.returncode} while converting {source}{detail}"
            )
        return output


def decode_with_external_converter(image_path: Path, converter: WebpConverter) -> Image.Image | None:
    if not is_webp(image_path):
        return None
    with tempfile.TemporaryDirectory(prefix="avd-webp-", ignore_cleanup_errors=True) as temp_dir:
        target = Path(temp_dir) / f"{image_path.stem}.png"
        try:
            output = converter.convert(image_path, target)
        except FileNotFoundError:
            logger.warning(
                "webp_tool_missing",
                tool=converter.executable,
                hint="Install the 'webp' package to enable WebP decoding.",
            )
            return None
        except OSError as exc:
            raise ExternalToolError(f"Failed to run {converter.executable} for {image_path}: {exc}") from exc
        if output:
            logger.debug("webp_tool_output", tool=converter.executable, output=output)
        try:
            with Image.open(target) as image:
                return image.convert("RGBA")
        except OSError as exc:
            raise ExternalToolError(f"{converter.executable} produced an unreadable PNG for {image_path}") from exc


def decode_with_opencv(image_path: Path) -> Image.Image | None:
    """Last resort: let OpenCV decode the raw bytes and copy the pixels into a fresh RGBA bitmap."""
    raw = np.frombuffer(image_path.read_bytes(), dtype=np.uint8)
    if raw.size == 0:
        return None
    try:
        pixels = cv2.imdecode(raw, cv2.IMREAD_UNCHANGED)
    except cv2.error as exc:
        logger.debug("decode_strategy_failed", strategy="opencv", path=str(image_path), error=str(exc))
        return None
    if pixels is None:
        return None
    if pixels.dtype == np.uint16:
        pixels = (pixels >> 8).astype(np.uint8)
    elif pixels.dtype != np.uint8:
        return None

    if pixels.ndim == 2 or pixels.shape[2] == 1:
        rgba = cv2.cvtColor(pixels, cv2.COLOR_GRAY2RGBA)
    elif pixels.shape[2] == 3:
        rgba = cv2.cvtColor(pixels, cv2.COLOR_BGR2RGBA)
    elif pixels.shape[2] == 4:
        rgba = cv2.cvtColor(pixels, cv2.COLOR_BGRA2RGBA)
    else:
        return None

    height, width = rgba.shape[:2]
    if width <= 0 or height <= 0:
        return None
    canvas = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    canvas.paste(Image.fromarray(rgba), (0, 0))
    return canvas


class ImageDecoder:
    """Decodes device artwork through an ordered chain of strategies.

    Each strategy returns an RGBA image or None to hand over to the next
    one. Only a fatal external tool failure raises from inside the chain.
    """

    def __init__(self, webp_converter: WebpConverter | None = None) -> None:
        self.webp_converter = webp_converter if webp_converter is not None else DwebpConverter()

    def strategies(self) -> List[Tuple[str, DecodeStrategy]]:
        return [
            ("pillow", decode_with_pillow),
            ("stream", decode_from_stream),
            ("plugin", decode_with_registered_plugins),
            ("external", lambda path: decode_with_external_converter(path, self.webp_converter)),
            ("opencv", decode_with_opencv),
        ]

    def decode(self, image_path: Path) -> Image.Image:
        if not image_path.is_file():
            raise DecodeError(f"Image file {image_path} does not exist")
        for name, strategy in self.strategies():
            image = strategy(image_path)
            if image is not None:
                logger.debug("image_decoded", path=str(image_path), strategy=name, size=list(image.size))
                return image
        if is_webp(image_path) and running_headless():
            raise DecodeError(
                f"Unable to decode {image_path}: WebP decoding requires the '{self.webp_converter.executable}' "
                "command when running headless. Install the 'webp' package and ensure it is on the PATH."
            )
        raise DecodeError(f"Unsupported image format for {image_path}")


# ---------------------------------------------------------------------------
# Compositing
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class DeviceImages:
    original: Image.Image
    display: DisplayArea

    def _display_slices(self) -> Tuple[slice, slice]:
        width, height = self.original.size
        left = min(max(self.display.x, 0), width)
        right = min(max(self.display.x + self.display.width, 0), width)
        top = min(max(self.display.y, 0), height)
        bottom = min(max(self.display.y + self.display.height, 0), height)
        return slice(top, bottom), slice(left, right)

    def with_transparent_display(self) -> Image.Image:
        """Device artwork with the screen rectangle cut out to full transparency."""
        pixels = np.array(self.original.convert("RGBA"), dtype=np.uint8)
        rows, columns = self._display_slices()
        pixels[rows, columns] = 0
        return Image.fromarray(pixels)

    def overlay(self) -> Image.Image:
        """Transparent canvas with the screen rectangle filled opaque black."""
        width, height = self.original.size
        pixels = np.zeros((height, width, 4), dtype=np.uint8)
        rows, columns = self._display_slices()
        pixels[rows, columns, 3] = 255
        return Image.fromarray(pixels)


# ---------------------------------------------------------------------------
# Archive
# ---------------------------------------------------------------------------


@dataclasses.dataclass
class SkinLayers:
    portrait_frame: Image.Image
    landscape_frame: Image.Image
    portrait_map: Image.Image
    landscape_map: Image.Image

    @classmethod
    def from_device_images(cls, portrait: DeviceImages, landscape: DeviceImages) -> "SkinLayers":
        return cls(
            portrait_frame=portrait.with_transparent_display(),
            landscape_frame=landscape.with_transparent_display(),
            portrait_map=portrait.overlay(),
            landscape_map=landscape.overlay(),
        )

    def entries(self) -> Iterator[Tuple[str, Image.Image]]:
        yield PORTRAIT_FRAME_ENTRY, self.portrait_frame
        yield LANDSCAPE_FRAME_ENTRY, self.landscape_frame
        yield PORTRAIT_MAP_ENTRY, self.portrait_map
        yield LANDSCAPE_MAP_ENTRY, self.landscape_map


def build_skin_properties(profile: HardwareProfile, tablet: bool) -> Dict[str, str]:
    return {
        "touch": "true",
        "platformName": "and",
        "tablet": "true" if tablet else "false",
        "systemFontFamily": SYSTEM_FONT_FAMILY,
        "proportionalFontFamily": SYSTEM_FONT_FAMILY,
        "monospaceFontFamily": MONOSPACE_FONT_FAMILY,
        "smallFontSize": str(SMALL_FONT_SIZE),
        "mediumFontSize": str(MEDIUM_FONT_SIZE),
        "largeFontSize": str(LARGE_FONT_SIZE),
        "pixelRatio": f"{profile.pixel_ratio():.6f}",
        "overrideNames": TABLET_OVERRIDE_NAMES if tablet else PHONE_OVERRIDE_NAMES,
    }


def render_properties(properties: Mapping[str, str], generated_at: datetime) -> str:
    lines = [f"#Created by {GENERATOR_NAME} on {generated_at.isoformat()}"]
    lines.extend(f"{key}={value}" for key, value in properties.items())
    return "\n".join(lines) + "\n"


def encode_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def _zip_entry(name: str, generated_at: datetime) -> zipfile.ZipInfo:
    info = zipfile.ZipInfo(name, date_time=generated_at.timetuple()[:6])
    info.compress_type = zipfile.ZIP_DEFLATED
    return info


def write_skin_archive(
    output_path: Path,
    layers: SkinLayers,
    properties: Mapping[str, str],
    generated_at: datetime | None = None,
) -> Path:
    generated_at = generated_at or datetime.now()
    try:
        archive = zipfile.ZipFile(output_path, "x")
    except FileExistsError as exc:
        raise ValidationError(f"Output file {output_path} already exists") from exc
    except OSError as exc:
        raise ArchiveWriteError(f"Failed to create skin archive {output_path}: {exc}") from exc
    try:
        with archive:
            for name, image in layers.entries():
                archive.writestr(_zip_entry(name, generated_at), encode_png(image))
            archive.writestr(
                _zip_entry(PROPERTIES_ENTRY, generated_at),
                render_properties(properties, generated_at).encode("latin-1", errors="replace"),
            )
    except (OSError, ValueError) as exc:
        # Only reached once this call has created the file.
        output_path.unlink(missing_ok=True)
        raise ArchiveWriteError(f"Failed to write skin archive {output_path}: {exc}") from exc
    logger.info("skin_archive_written", path=str(output_path))
    return output_path


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


def locate_layout_file(skin_dir: Path) -> Path:
    layout = skin_dir / LAYOUT_FILE_NAME
    if layout.is_file():
        return layout
    # Some skins keep the layout one directory deeper.
    candidates: List[Path] = []
    for child in sorted(skin_dir.iterdir()):
        if child.is_file() and child.name.lower() == LAYOUT_FILE_NAME:
            candidates.append(child)
        elif child.is_dir() and (child / LAYOUT_FILE_NAME).is_file():
            candidates.append(child / LAYOUT_FILE_NAME)
    if len(candidates) > 1:
        raise ValidationError(f"Multiple layout files detected within {skin_dir}")
    if not candidates:
        raise ValidationError(f"Unable to locate layout file inside {skin_dir}")
    return candidates[0]


def default_output_path(skin_dir: Path) -> Path:
    return skin_dir.parent / f"{skin_dir.name}{OUTPUT_SUFFIX}"


def load_device_images(
    orientation: OrientationDefinition,
    skin_dir: Path,
    layout_dir: Path,
    decoder: ImageDecoder,
) -> DeviceImages:
    image_path = resolve_image_path(orientation.source_image_name, skin_dir, layout_dir)
    if not image_path.is_file():
        raise ValidationError(f"Missing image '{orientation.source_image_name}' for {orientation.kind.name}")
    original = decoder.decode(image_path)
    if not orientation.display.is_usable:
        raise ValidationError(f"Invalid display dimensions for {orientation.kind.name}")
    return DeviceImages(original=original, display=orientation.display)


def convert_skin(
    skin_dir: Path,
    output_path: Path | None = None,
    decoder: ImageDecoder | None = None,
    tablet_threshold: float = TABLET_INCH_THRESHOLD,
) -> Path:
    """Convert an AVD skin directory into a skin archive and return the archive path."""
    skin_dir = skin_dir.expanduser().absolute()
    if not skin_dir.is_dir():
        raise ValidationError(f"Input path {skin_dir} is not a directory")
    output_path = output_path.expanduser().absolute() if output_path else default_output_path(skin_dir)
    if output_path.exists():
        raise ValidationError(f"Output file {output_path} already exists")

    layout_file = locate_layout_file(skin_dir)
    logger.debug("layout_located", layout=str(layout_file))
    document = parse_layout_file(layout_file, skin_dir)
    profile = read_hardware_profile(locate_hardware_profile(skin_dir, layout_file))
    logger.debug(
        "hardware_profile_loaded",
        width=profile.width_pixels,
        height=profile.height_pixels,
        density=profile.density_dpi,
    )
    if document.portrait is None or document.landscape is None:
        raise ValidationError("Layout file must define portrait and landscape display information")

    decoder = decoder or ImageDecoder()
    portrait = load_device_images(document.portrait, skin_dir, layout_file.parent, decoder)
    landscape = load_device_images(document.landscape, skin_dir, layout_file.parent, decoder)

    tablet = profile.is_tablet_like(tablet_threshold)
    properties = build_skin_properties(profile, tablet)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    return write_skin_archive(output_path, SkinLayers.from_device_images(portrait, landscape), properties)


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------


class SkinArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        raise UsageError(message)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = SkinArgumentParser(
        prog=GENERATOR_NAME,
        description="Convert Android emulator (AVD) device skins into packaged skin archives.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging on stderr.")
    parser.add_argument("--log-json", action="store_true", help="Emit log lines as JSON.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    convert_parser = subparsers.add_parser(
        "convert",
        help="Convert one AVD skin directory into a skin archive.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    convert_parser.add_argument("skin_dir", help="AVD skin directory containing the layout file and device images.")
    convert_parser.add_argument(
        "output",
        nargs="?",
        help=f"Archive to create. Defaults to <skin-dir>{OUTPUT_SUFFIX} next to the skin directory.",
    )
    convert_parser.add_argument(
        "--tablet-threshold",
        type=float,
        default=TABLET_INCH_THRESHOLD,
        help="Screen diagonal in inches from which a device is classified as a tablet.",
    )
    convert_parser.add_argument(
        "--dwebp",
        default=WEBP_TOOL,
        help="Name or path of the external WebP decoder used when no in-process decoder handles a file.",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_arg_parser()
    try:
        args = parser.parse_args(argv)
    except UsageError as exc:
        raise SystemExit(f"Error: {exc}") from exc

    configure_logging(verbose=args.verbose, log_json=args.log_json)

    if args.command == "convert":
        try:
            output_path = convert_skin(
                Path(args.skin_dir),
                Path(args.output) if args.output else None,
                decoder=ImageDecoder(DwebpConverter(args.dwebp)),
                tablet_threshold=args.tablet_threshold,
            )
        except SkinConversionError as exc:
            raise SystemExit(f"Error: {exc}") from exc
        print(output_path)


if __name__ == "__main__":
    main()
