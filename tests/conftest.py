import sys, pytest
from pathlib import Path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path: sys.path.insert(0, str(ROOT))
from .fakes import ScriptedRuntime, make_stack


@pytest.fixture
def stack():
    "Recording kernel, coordinator, dispatcher and lifecycle around a scripted runtime."
    return make_stack()


@pytest.fixture
def uninterruptible():
    return make_stack(ScriptedRuntime(supports_interrupt=False))
