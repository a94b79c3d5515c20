"""Remote-call Resilience Implementations.

Contains the retry coordinator (bounded exponential backoff with jitter),
the client-side rate limiter and the circuit breaker.
Bounded Context: Remote Resilience
"""
