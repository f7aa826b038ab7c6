"""Progress API for the RFQ reply tracker.

Provides a small FastAPI JSON interface for:
- Batch progress (snapshot, stages, status message)
- The one-shot recovery banner
- Starting and cancelling reply monitoring
"""

from rfq_tracker.web.app import create_app

__all__ = ["create_app"]
