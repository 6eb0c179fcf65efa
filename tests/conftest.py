"""
weightbridge Test Configuration

Pytest fixtures and helpers shared by the weightbridge tests.
"""

import io
import sys
import zipfile
from pathlib import Path
from typing import Dict, List, Tuple

import pytest
import torch
import torch.nn as nn


# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest."""
    # Register custom markers
    config.addinivalue_line(
        "markers", "parity: byte-level comparisons against torch.save"
    )
    config.addinivalue_line(
        "markers", "interop: tests using the safetensors package as a reference"
    )


class TwoLayer(nn.Module):
    """Linear 5 -> 1 -> 2, no biases."""

    def __init__(self):
        super().__init__()
        self.lin1 = nn.Linear(5, 1, bias=False)
        self.lin2 = nn.Linear(1, 2, bias=False)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.lin2(self.lin1(x))


class WithBuffers(nn.Module):
    """Parameters of several shapes plus a buffer."""

    def __init__(self):
        super().__init__()
        self.lin = nn.Linear(4, 3)
        self.norm = nn.BatchNorm1d(3)
        self.register_buffer("steps", torch.tensor(7, dtype=torch.int64))


@pytest.fixture
def two_layer() -> TwoLayer:
    """Two-layer linear model with every weight set to 2.0."""
    model = TwoLayer()
    with torch.no_grad():
        for p in model.parameters():
            p.fill_(2.0)
    return model


@pytest.fixture
def buffered_model() -> WithBuffers:
    """Model with random weights, batch norm statistics and an int buffer."""
    torch.manual_seed(0)
    model = WithBuffers()
    with torch.no_grad():
        model.norm.running_mean.uniform_()
        model.norm.running_var.uniform_(0.5, 1.5)
    return model


@pytest.fixture
def temp_model_dir(tmp_path: Path) -> Path:
    """Create a temporary directory for model files."""
    model_dir = tmp_path / "models"
    model_dir.mkdir()
    return model_dir


def torch_save_bytes(obj) -> bytes:
    """Reference archive written by torch.save."""
    buffer = io.BytesIO()
    torch.save(obj, buffer)
    return buffer.getvalue()


def archive_members(data: bytes) -> List[Tuple[str, bytes]]:
    """(name, content) of every member sorted by name, timestamps ignored."""
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        return sorted((info.filename, zf.read(info)) for info in zf.infolist())


def member_contents(data: bytes) -> Dict[str, bytes]:
    """Members keyed by name relative to the archive root."""
    return {name.split("/", 1)[1]: content for name, content in archive_members(data)}


def make_archive(members: Dict[str, bytes], root: str = "archive") -> bytes:
    """Hand-built archive for malformed-input tests."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_STORED) as zf:
        for name, content in members.items():
            zf.writestr(f"{root}/{name}", content)
    return buffer.getvalue()
