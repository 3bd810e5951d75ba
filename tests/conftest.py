"""Shared fixtures: small real images written with Pillow."""

from pathlib import Path

import pytest
from PIL import Image


@pytest.fixture
def make_image():
    """Factory writing a tiny gradient image; format follows the suffix."""

    def _make(path: Path, mode: str = 'RGB', size=(32, 24), **save_kwargs) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        img = Image.linear_gradient('L').resize(size)
        if mode == 'RGBA':
            img = Image.merge('RGBA', (img, img, img, img))
        elif mode == 'P':
            img = img.convert('RGB').convert('P')
        else:
            img = img.convert(mode)
        img.save(path, **save_kwargs)
        return path

    return _make


@pytest.fixture
def thread_limit(monkeypatch):
    """Makes the OS refuse dispatcher threads after the first `n` have started."""
    import threading

    real_start = threading.Thread.start

    def _limit(n: int):
        started = []

        def limited_start(self):
            if self.name.startswith('webp-'):
                if len(started) >= n:
                    raise RuntimeError("can't start new thread")
                started.append(self.name)
            return real_start(self)

        monkeypatch.setattr(threading.Thread, 'start', limited_start)
        return started

    return _limit
