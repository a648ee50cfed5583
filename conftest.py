import sys
import time
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from shuffle_offload.data.tcp import TCPObjectServer  # noqa: E402


@pytest.fixture
def object_server(tmp_path: Path):
    root = tmp_path / "objects"
    root.mkdir()
    server = TCPObjectServer("127.0.0.1", 0, root)
    server.start()
    for _ in range(100):
        if server.port != 0:
            break
        time.sleep(0.01)
    assert server.port != 0
    try:
        yield server
    finally:
        server.close()
        server.join(timeout=1)
