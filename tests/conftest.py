from __future__ import annotations

import os
import sys

sys.path.insert(0, os.path.abspath("."))

# Keep tests off any real provider account, webhook host or OTLP collector.
os.environ.setdefault("TELEMETRY_DISABLED", "true")
os.environ.setdefault("BRIGHTDATA_WEBHOOKS_ENABLED", "false")
