"""Shared pytest fixtures: settings on temp model files, a fake ONNX session, sample images."""

from io import BytesIO
import sys
import threading
from pathlib import Path
from typing import Callable, List, Optional

import numpy as np
import pytest
from PIL import Image

BASE_DIR = Path(__file__).resolve().parent.parent
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

from u2net_service.config import Settings  # noqa: E402
from u2net_service.model_loader import ModelRegistry  # noqa: E402

INPUT_SIZE = 320


def default_mask(size: int = INPUT_SIZE) -> np.ndarray:
    """Horizontal ramp: left quarter transparent, right quarter opaque."""
    ramp = np.clip(np.linspace(-0.5, 1.5, size, dtype=np.float32), 0.0, 1.0)
    return np.tile(ramp, (size, 1)).reshape(1, 1, size, size)


class FakeNode:
    """Mimics onnxruntime.NodeArg."""

    def __init__(self, name: str, shape):
        self.name = name
        self.shape = shape


class FakeSession:
    """Stands in for onnxruntime.InferenceSession."""

    def __init__(
        self,
        outputs_fn: Optional[Callable[[np.ndarray], List[np.ndarray]]] = None,
        gate: Optional[threading.Event] = None,
        error: Optional[Exception] = None,
    ):
        self.outputs_fn = outputs_fn or (lambda tensor: [default_mask()])
        self.gate = gate
        self.error = error
        self.calls = 0
        self.feeds = []
        self.started = threading.Event()
        self._lock = threading.Lock()

    def get_inputs(self):
        return [FakeNode("input.1", [1, 3, INPUT_SIZE, INPUT_SIZE])]

    def get_outputs(self):
        return [FakeNode("d0", [1, 1, INPUT_SIZE, INPUT_SIZE])]

    def run(self, output_names, feed):
        with self._lock:
            self.calls += 1
            self.feeds.append(feed)
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=10)
        if self.error is not None:
            raise self.error
        return self.outputs_fn(feed["input.1"])


class CountingFactory:
    def __init__(self, session_fn: Callable[[], FakeSession] = FakeSession):
        self.session_fn = session_fn
        self.calls: List[Path] = []
        self.sessions: List[FakeSession] = []

    def __call__(self, model_path: Path) -> FakeSession:
        self.calls.append(model_path)
        session = self.session_fn()
        self.sessions.append(session)
        return session


def make_image_bytes(width: int, height: int, fmt: str = "JPEG", mode: str = "RGB") -> bytes:
    xs = np.linspace(0, 255, width, dtype=np.float32)
    ys = np.linspace(0, 255, height, dtype=np.float32)
    r = np.tile(xs, (height, 1))
    g = np.tile(ys.reshape(-1, 1), (1, width))
    b = np.full((height, width), 128, dtype=np.float32)
    rgb = np.dstack((r, g, b)).astype(np.uint8)
    img = Image.fromarray(rgb).convert(mode)
    buf = BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def model_dir(tmp_path):
    path = tmp_path / "models"
    path.mkdir()
    (path / "u2net.onnx").write_bytes(b"fake-general")
    return path


@pytest.fixture
def settings(tmp_path, model_dir):
    return Settings(
        u2net_model_path_general=model_dir / "u2net.onnx",
        u2net_model_path_portrait=model_dir / "u2net_human_seg.onnx",
        temp_results_dir=tmp_path / "results",
        max_concurrent_inferences=2,
        enable_telemetry=True,
    )


@pytest.fixture
def install_portrait(model_dir):
    (model_dir / "u2net_human_seg.onnx").write_bytes(b"fake-portrait")


@pytest.fixture
def factory():
    return CountingFactory()


@pytest.fixture
def registry(settings, factory):
    return ModelRegistry(settings, session_factory=factory)


@pytest.fixture
def jpeg_500x800():
    return make_image_bytes(500, 800)
