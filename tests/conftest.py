import pytest

from tests.fakes import make_png_base64


@pytest.fixture
def png_base64():
    return make_png_base64()
