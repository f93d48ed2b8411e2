import sys

import pytest


@pytest.fixture
def py():
    """Command line running a Python one-liner, used as a fake benchmark."""
    def make(code):
        return [sys.executable, "-c", code]
    return make


@pytest.fixture
def sensor_file(tmp_path):
    """Factory writing a sysfs-style sensor file."""
    def make(name, value):
        path = tmp_path / name
        path.write_text(f"{value}\n")
        return path
    return make


@pytest.fixture
def thermal_root(tmp_path):
    """Fake /sys/class/thermal with two zones, listed out of order."""
    root = tmp_path / "thermal"
    for n, zone_type, temp in [(10, "gpu-thermal", 51000), (2, "cpu-thermal", 47000)]:
        zone = root / f"thermal_zone{n}"
        zone.mkdir(parents=True)
        (zone / "type").write_text(zone_type + "\n")
        (zone / "temp").write_text(f"{temp}\n")
    (root / "cooling_device0").mkdir()
    return root
