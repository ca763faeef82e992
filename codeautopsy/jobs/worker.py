from __future__ import annotations

# Entry point for a standalone worker process:
#   CODEAUTOPSY_REDIS_URL=redis://localhost:6379/0 dramatiq codeautopsy.jobs.worker
# Building the runtime declares the pipeline actor on the Redis broker and makes that broker global.

from codeautopsy.service.app import build_runtime
from codeautopsy.settings import Settings


runtime = build_runtime(Settings())
broker = runtime.jobs.broker
