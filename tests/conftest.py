import io
import os
import sys
import tempfile
from pathlib import Path
from types import SimpleNamespace

# Ensure repo root on sys.path for the flat top-level modules.
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

_TMP = Path(tempfile.mkdtemp(prefix="cartoon-test-"))
os.environ.setdefault("CARTOON_DB", str(_TMP / "cartoon.db"))
os.environ.setdefault("WATERMARK_PATH", str(_TMP / "watermark.png"))

import pytest
from PIL import Image

import cartoon_core
import db
import outcomes


def make_png(size=(1000, 1000), color=(200, 120, 80), mode="RGB") -> bytes:
    img = Image.new(mode, size, color)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def noise_png(size=(32, 32)) -> bytes:
    buf = io.BytesIO()
    Image.effect_noise(size, 64).save(buf, format="PNG")
    return buf.getvalue()


def image_size(data: bytes):
    return Image.open(io.BytesIO(data)).size


def inline_part(data):
    return SimpleNamespace(text=None, inline_data=SimpleNamespace(data=data, mime_type="image/png"))


def text_part(text):
    return SimpleNamespace(text=text, inline_data=None)


def gemini_response(*parts, text=None):
    candidate = SimpleNamespace(content=SimpleNamespace(parts=list(parts)))
    return SimpleNamespace(candidates=[candidate], text=text)


class FakeModels:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def generate_content(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.response


def fake_client(response=None, error=None, model="test-model"):
    sdk = SimpleNamespace(models=FakeModels(response=response, error=error))
    return cartoon_core.GeminiClient(api_key="test-key", model=model, sdk_client=sdk)


@pytest.fixture
def square_png():
    return make_png((1000, 1000))


@pytest.fixture
def source_file(tmp_path, square_png):
    path = tmp_path / "portrait.png"
    path.write_bytes(square_png)
    return path


@pytest.fixture
def isolated_paths(monkeypatch, tmp_path):
    """Point the database and the outcome log at tmp_path."""
    logs = tmp_path / "logs"
    monkeypatch.setattr(db, "DB_PATH", tmp_path / "test.db")
    monkeypatch.setattr(outcomes, "LOGS_DIR", logs)
    monkeypatch.setattr(outcomes, "OUTCOME_LOG", logs / "outcomes.log")
    monkeypatch.setattr(outcomes, "TOTALS_FILE", logs / "outcomes_totals.json")
    monkeypatch.setenv("WATERMARK_PATH", str(tmp_path / "assets" / "watermark.png"))
    db.init_db()
    return tmp_path


@pytest.fixture
def op_calls(monkeypatch):
    """Record every recipe operation (name, params) while still running it."""
    calls = []
    for name, fn in list(cartoon_core._OPERATIONS.items()):
        def spy(img, _name=name, _fn=fn, **params):
            calls.append((_name, params))
            return _fn(img, **params)
        monkeypatch.setitem(cartoon_core._OPERATIONS, name, spy)
    return calls
