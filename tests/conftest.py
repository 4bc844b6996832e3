import sys
import os
import pytest

# Add the project root directory to the python path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# Keep the app off any real KV service while tests import it
os.environ["KV_BACKEND"] = "memory"
os.environ.pop("KV_URL", None)


@pytest.fixture
def memory_store():
    from kv_store import MemoryKeyValueStore
    return MemoryKeyValueStore()
