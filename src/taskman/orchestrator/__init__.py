"""Task orchestrator for externally spawned CLI agent workers.

Tasks live in one SQLite store and move through a closed state machine. The
scheduler never waits on a worker: it launches a supervised process, returns,
and later observes completion through the per-task progress snapshot file or
an explicit completion signal. Worker pools and pipelines are built on top of
the queue as completion listeners, so fan-out and DAG advancement run in the
same single-threaded sweep as ordinary dispatch.
"""
