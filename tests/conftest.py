"""Pytest configuration and fixtures."""

from io import BytesIO

import pytest
from PIL import Image


@pytest.fixture
def mock_env(monkeypatch, tmp_path):
    """Set up a configuration file and matching environment variables."""
    config_file = tmp_path / "timelapse.env"
    config_file.write_text("# timelapse test configuration\n")

    env_vars = {
        "TIMELAPSE_CONFIG": str(config_file),
        "PRINTER": "http://duet.local",
        "MJPEG_SOURCE": "http://camera.local:8080/?action=snapshot",
        "SNAPSHOT_DIRECTORY": str(tmp_path / "snapshots"),
        "TAKE_SNAPSHOTS": "true",
        "LAYER_CHANGE": "false",
        "QUERY_INTERVAL": "5",
        "VIDEO_FRAMERATE": "0.1",
        "VIDEO_OUTPUT_DIRECTORY": "",
        "VIDEO_QUALITY": "23",
        "CAMERA_ROTATION": "0",
        "REQUEST_TIMEOUT": "10",
        "ENCODER_TIMEOUT": "600",
    }

    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)

    return env_vars


@pytest.fixture
def jpeg_bytes():
    """A small but genuine JPEG image."""
    output = BytesIO()
    Image.new("RGB", (8, 4), color=(200, 80, 20)).save(output, format="JPEG")
    return output.getvalue()


@pytest.fixture
def mock_status_idle():
    """Mock rr_status?type=2 response - idle."""
    return {
        "status": "I",
        "coords": {
            "axesHomed": [1, 1, 1],
            "xyz": [0.0, 0.0, 10.0],
        },
        "temps": {"bed": {"current": 24.1}},
    }


@pytest.fixture
def mock_status_printing():
    """Build mock rr_status?type=2 responses for a running print."""

    def build(z=0.2):
        return {
            "status": "P",
            "coords": {
                "axesHomed": [1, 1, 1],
                "xyz": [102.5, 87.25, z],
            },
            "temps": {"bed": {"current": 60.0}},
        }

    return build


@pytest.fixture
def mock_file_info():
    """Mock rr_fileinfo?type=1 response."""
    return {
        "err": 0,
        "size": 1458231,
        "fileName": "0:/gcodes/benchy.gcode",
        "layerHeight": 0.2,
        "height": 48.0,
    }
