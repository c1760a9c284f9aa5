"""
Refinery Core Components

Foundational infrastructure shared by the refinement services:
- Configuration from environment
- Error hierarchy
- Circuit breaker for collaborator calls
"""

from .circuit_breaker import CircuitBreaker, CircuitBreakerOpen, CircuitState
from .config import Config, get_config

__all__ = ["CircuitBreaker", "CircuitBreakerOpen", "CircuitState", "Config", "get_config"]
