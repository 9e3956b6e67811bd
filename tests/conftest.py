# Test fixtures and configuration
import pytest
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from layer_vton.config import PersistenceConfig
from layer_vton.models.image_ref import LocalHandleStore
from layer_vton.services.storage import FileCache
from layer_vton.utils.image_codec import ImageCodec

from fakes import make_jpeg, make_png


@pytest.fixture
def jpeg_bytes():
    """A small but real JPEG photo."""
    return make_jpeg("red")


@pytest.fixture
def png_bytes():
    """A small RGBA PNG."""
    return make_png("blue")


@pytest.fixture
def garment_images():
    """Distinct garment images keyed by detection slot name."""
    return {
        "light outer": make_jpeg("navy"),
        "main top": make_jpeg("white"),
        "bottoms": make_jpeg("black"),
    }


@pytest.fixture
def handles():
    """A fresh local handle store per test."""
    return LocalHandleStore()


@pytest.fixture
def persistence_settings(tmp_path):
    # Mocked hosts only; skip DNS lookups for the public-host check
    return PersistenceConfig(cache_dir=tmp_path / "cache", debounce_seconds=0.01, public_hosts_only=False)


@pytest.fixture
def codec(persistence_settings, handles):
    return ImageCodec(persistence_settings, handles)


@pytest.fixture
def file_cache(tmp_path):
    return FileCache(tmp_path / "cache")
