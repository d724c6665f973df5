import sys
from pathlib import Path
import pytest

# Ensure project root is on sys.path so tests can import the `prompt_party` package
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def reset_shared_state():
	# Clear in-memory limiters, caches and sockets between tests to avoid cross-test flakiness
	import prompt_party.main as app_main
	from prompt_party.cache import get_cache
	app_main.reset_rate_limits()
	app_main._WS_CONNECTIONS.clear()
	get_cache().clear()
	yield
	app_main._WS_CONNECTIONS.clear()
