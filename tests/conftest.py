"""Shared fixtures: sandboxed repository store and in-memory test images."""

import io

import pytest
from fastapi.testclient import TestClient
from PIL import Image

import config


def make_image(size=(300, 200), color=(0, 0, 0), fmt="PNG") -> bytes:
    """Encode a solid-color image of the given size."""
    img = Image.new("RGB", size, color=color)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def upload_dir(tmp_path, monkeypatch):
    """Point the repository store at a temporary directory."""
    root = tmp_path / "uploads"
    root.mkdir()
    monkeypatch.setattr(config, "UPLOAD_DIR", root)
    return root


@pytest.fixture
def client(upload_dir):
    from main import app

    return TestClient(app)
