import pytest

from imaging_helpers import BLUE, RED, WHITE, image_bytes

@pytest.fixture
def white_background() -> bytes:
    return image_bytes((1000, 1000), WHITE)

@pytest.fixture
def blue_portrait() -> bytes:
    return image_bytes((300, 400), BLUE)

@pytest.fixture
def red_portrait() -> bytes:
    return image_bytes((300, 400), RED)
