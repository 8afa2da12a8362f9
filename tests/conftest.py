"""Shared fixtures for PhotoLabel tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest

from tests.fakes import encode_png

if TYPE_CHECKING:
    from numpy.typing import NDArray


@pytest.fixture()
def png_bytes() -> bytes:
    return encode_png()


@pytest.fixture()
def rgb_image() -> NDArray[np.uint8]:
    return np.zeros((100, 200, 3), dtype=np.uint8)
