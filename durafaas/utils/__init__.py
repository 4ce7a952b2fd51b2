from .retry import compute_backoff, next_poll_interval, schedule_retry

__all__ = ["compute_backoff", "next_poll_interval", "schedule_retry"]
