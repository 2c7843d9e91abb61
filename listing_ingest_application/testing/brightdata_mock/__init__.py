from .simulator import MOCK_BASE_URL, MockBrightData, MockBrightDataScenario, MockSnapshot, ndjson
from .webhook_sender import MockWebhookSender

__all__ = [
    "MOCK_BASE_URL",
    "MockBrightData",
    "MockBrightDataScenario",
    "MockSnapshot",
    "MockWebhookSender",
    "ndjson",
]
