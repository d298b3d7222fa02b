"""
mediasync: resumable bulk media sync.

Expands remote collections into items, then drives every item through
fetch metadata → acquire → transform → finalize under a concurrency cap,
persisting each transition so an interrupted run resumes where it stopped.
"""

__version__ = "1.0.0"
