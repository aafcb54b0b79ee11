"""
Test fixtures and utilities for TaskPilot testing.
"""

from .database import *
from .mocks import *
from .sample_data import *

__all__ = [
    "MockDatabase",
    "TestDataManager",
    "FakeChatClient",
    "BlockingChatClient",
    "SampleDataGenerator",
    "PYTHON",
    "TEST_MODEL",
]
