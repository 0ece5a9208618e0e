"""Tests for hardware profile parsing and device classification."""

from __future__ import annotations

from pathlib import Path

import pytest

from avd_skin_converter import (
    DEFAULT_LCD_DENSITY,
    HardwareProfile,
    locate_hardware_profile,
    parse_properties_text,
    read_hardware_profile,
)


class TestParsePropertiesText:
    def test_equals_colon_and_space_separators(self) -> None:
        values = parse_properties_text("a=1\nb: 2\nc 3\n")
        assert values == {"a": "1", "b": "2", "c": "3"}

    def test_comments_and_blank_lines_skipped(self) -> None:
        values = parse_properties_text("# comment\n! other\n\nhw.lcd.width = 720\n")
        assert values == {"hw.lcd.width": "720"}


class TestReadHardwareProfile:
    def test_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        profile = read_hardware_profile(tmp_path / "hardware.ini")
        assert profile == HardwareProfile(1080, 1920, 420.0)

    def test_none_uses_defaults(self) -> None:
        assert read_hardware_profile(None) == HardwareProfile()

    def test_reads_values(self, tmp_path: Path) -> None:
        path = tmp_path / "hardware.ini"
        path.write_text("hw.lcd.width=1440\nhw.lcd.height=2560\nhw.lcd.density=560\n")
        assert read_hardware_profile(path) == HardwareProfile(1440, 2560, 560.0)

    def test_pixel_density_fallback_key(self, tmp_path: Path) -> None:
        path = tmp_path / "hardware.ini"
        path.write_text("hw.lcd.pixelDensity=240\n")
        assert read_hardware_profile(path).density_dpi == 240.0

    def test_density_key_wins_over_pixel_density(self, tmp_path: Path) -> None:
        path = tmp_path / "hardware.ini"
        path.write_text("hw.lcd.pixelDensity=240\nhw.lcd.density=320\n")
        assert read_hardware_profile(path).density_dpi == 320.0

    def test_unparseable_values_fall_back(self, tmp_path: Path) -> None:
        path = tmp_path / "hardware.ini"
        path.write_text("hw.lcd.width=wide\nhw.lcd.height=12.5\nhw.lcd.density=dense\n")
        profile = read_hardware_profile(path)
        assert profile.width_pixels == 1080
        assert profile.height_pixels == 1920
        assert profile.density_dpi == DEFAULT_LCD_DENSITY

    def test_locate_prefers_skin_directory(self, tmp_path: Path) -> None:
        nested = tmp_path / "inner"
        nested.mkdir()
        (nested / "layout").write_text("")
        (nested / "hardware.ini").write_text("")
        assert locate_hardware_profile(tmp_path, nested / "layout") == nested / "hardware.ini"
        (tmp_path / "hardware.ini").write_text("")
        assert locate_hardware_profile(tmp_path, nested / "layout") == tmp_path / "hardware.ini"


class TestPixelRatio:
    def test_density_over_millimetres(self) -> None:
        assert HardwareProfile(1440, 2560, 560.0).pixel_ratio() == pytest.approx(22.047244, abs=1e-6)

    @pytest.mark.parametrize("density", [0.0, -10.0])
    def test_non_positive_density_uses_fallback(self, density: float) -> None:
        assert HardwareProfile(1440, 2560, density).pixel_ratio() == 6.0


class TestTabletClassification:
    def test_phone(self) -> None:
        profile = HardwareProfile(1440, 2560, 560.0)
        assert profile.diagonal_inches() == pytest.approx(5.245, abs=1e-3)
        assert profile.is_tablet_like(6.5) is False

    def test_tablet(self) -> None:
        profile = HardwareProfile(1536, 2048, 160.0)
        assert profile.diagonal_inches() == pytest.approx(16.0)
        assert profile.is_tablet_like(6.5) is True

    def test_non_positive_density_uses_320(self) -> None:
        # 1600x2400 at 320 dpi is 5 x 7.5 inches
        profile = HardwareProfile(1600, 2400, 0.0)
        assert profile.diagonal_inches() == pytest.approx(9.0139, abs=1e-3)
        assert profile.is_tablet_like(6.5) is True

