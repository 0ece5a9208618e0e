"""Shared pytest fixtures and helpers for avd_skin_converter tests."""

from __future__ import annotations

import logging
from collections.abc import Generator
from pathlib import Path

import pytest
import structlog
from PIL import Image

from avd_skin_converter import LOGGER_NAME

SAMPLE_LAYOUT = """\
// Minimal emulator skin layout
parts {
    device {
        display {
            width   100
            height  200
            x       0
            y       0
        }
    }
    portrait {
        background {
            image   port_back.png
        }
        buttons {
            power {
                image  button.png   # small control artwork
                x 10
                y 10
            }
        }
    }
    landscape {
        background {
            image   land_back.png
        }
    }
}

layouts {
    portrait {
        width     200
        height    400
        color     0x000000
        event     EV_SW:0:1

        part1 {
            name    portrait
            x       0
            y       0
        }
        part2 {
            name    device
            x       50
            y       100
        }
    }
    landscape {
        width     400
        height    200

        part1 {
            name    landscape
            x       0
            y       0
        }
        part2 {
            name    device
            x       150
            y       50
            rotation 3
        }
    }
}
"""

PHONE_HARDWARE = "hw.lcd.width=1440\nhw.lcd.height=2560\nhw.lcd.density=560\n"
TABLET_HARDWARE = "hw.lcd.width=1536\nhw.lcd.height=2048\nhw.lcd.density=160\n"

FRAME_COLOR = (200, 30, 60, 255)


def make_image(path: Path, size: tuple[int, int], color: tuple[int, int, int, int] = FRAME_COLOR) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGBA", size, color).save(path, format="PNG")
    return path


def build_skin(root: Path, layout: str = SAMPLE_LAYOUT, hardware: str | None = PHONE_HARDWARE) -> Path:
    """Write a complete skin directory under ``root``."""
    root.mkdir(parents=True, exist_ok=True)
    (root / "layout").write_text(layout, encoding="utf-8")
    if hardware is not None:
        (root / "hardware.ini").write_text(hardware, encoding="utf-8")
    make_image(root / "port_back.png", (200, 400))
    make_image(root / "land_back.png", (400, 200))
    make_image(root / "button.png", (20, 20), (0, 0, 255, 255))
    return root


@pytest.fixture
def skin_dir(tmp_path: Path) -> Path:
    """Phone-sized skin directory with portrait and landscape artwork."""
    return build_skin(tmp_path / "pixel")


@pytest.fixture(autouse=True)
def _restore_logging() -> Generator[None, None, None]:
    """Restore logging state changed by ``configure_logging`` in CLI tests."""
    converter_logger = logging.getLogger(LOGGER_NAME)
    original_handlers = converter_logger.handlers[:]
    original_level = converter_logger.level
    original_propagate = converter_logger.propagate
    yield
    converter_logger.handlers = original_handlers
    converter_logger.setLevel(original_level)
    converter_logger.propagate = original_propagate
    structlog.reset_defaults()
