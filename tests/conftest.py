import logging
import threading

import pytest

from relayci.model import RunContext


@pytest.fixture(autouse=True)
def _reset_relayci_logger():
    # the CLI installs a handler bound to the runner's stderr
    yield
    log = logging.getLogger("relayci")
    for handler in log.handlers[:]:
        log.removeHandler(handler)
    log.setLevel(logging.NOTSET)
    log.propagate = True


@pytest.fixture
def push_main():
    return RunContext(event="push", ref="refs/heads/main", sha="a1b2c3d")


@pytest.fixture
def calls():
    """Thread-safe list of job ids, in the order executors saw them."""

    class Calls(list):
        def __init__(self):
            super().__init__()
            self.lock = threading.Lock()

        def add(self, item):
            with self.lock:
                self.append(item)

    return Calls()
