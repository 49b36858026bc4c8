"""Job queue, completion worker and message intake."""
