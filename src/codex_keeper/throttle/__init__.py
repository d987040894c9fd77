from codex_keeper.throttle.rate_limiter import RateLimiter, RateLimitResult

__all__ = ["RateLimitResult", "RateLimiter"]
