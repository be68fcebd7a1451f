import pytest
from unittest.mock import AsyncMock, patch

from restart_router import (
    REBOOT_BUTTON_SELECTOR,
    REBOOT_FORM_SELECTOR,
    STATUS_LINK_SELECTOR,
    RouterConfig,
)
from fakes import FakeElement


@pytest.fixture
def config():
    return RouterConfig(url="http://192.168.1.1", username="admin", password="s3cret")


@pytest.fixture(autouse=True)
def no_delay():
    """Skip every settle delay and poll interval, keep the awaited durations for assertions"""
    with patch("restart_router.delay", new_callable=AsyncMock) as mock_delay:
        yield mock_delay


@pytest.fixture
def router_elements():
    """Fresh element map of a router UI offering login, status link and reboot form"""
    return {
        'input[name="username"]': [FakeElement()],
        'input[type="password"]': [FakeElement()],
        "button": [FakeElement("Login")],
        STATUS_LINK_SELECTOR: [FakeElement("Status")],
        REBOOT_FORM_SELECTOR: [FakeElement()],
        REBOOT_BUTTON_SELECTOR: [FakeElement()],
    }
