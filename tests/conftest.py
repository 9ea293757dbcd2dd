import os
import sys


# Put the repository root on sys.path so tests can import `cpullm` and the
# `apps.*` entrypoints without requiring an editable install.
_REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _REPO_ROOT not in sys.path:
    sys.path.insert(0, _REPO_ROOT)

import pytest


@pytest.fixture
def anyio_backend():
    # The server runs on asyncio (uvicorn); don't parametrize over trio just
    # because it happens to be installed.
    return "asyncio"
