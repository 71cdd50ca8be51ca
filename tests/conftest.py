import pytest

from ble_trilateration_server.config_manager import PipelineSettings
from ble_trilateration_server.models import Anchor


@pytest.fixture
def anchors():
    return {
        1: Anchor(1, 0.0, 0.0),
        2: Anchor(2, 10.0, 0.0),
        3: Anchor(3, 10.0, 5.0),
        4: Anchor(4, 0.0, 5.0),
    }


@pytest.fixture
def settings():
    return PipelineSettings()


@pytest.fixture
def config_path(tmp_path):
    return str(tmp_path / "config" / "config.yaml")
