"""
Placeflow - Queue Workers

Job queue orchestration, batching and queue handlers.

NOTE: the standalone worker process is started with:
    python -m placeflow.workers.runner

Do NOT import the runner here to avoid sys.modules RuntimeWarning
when running it as __main__.
"""
