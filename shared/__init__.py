"""
Shared utilities for the document grounding core.
Configuration loading, retry decorator, OCR concurrency limiter.
"""

from __future__ import annotations

import functools
import logging
import os
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, TypeVar

import yaml

logger = logging.getLogger(__name__)

# Type for retry decorator
T = TypeVar("T")

DEFAULT_CONFIG_PATH = "config/master_config.yaml"


# =============================================================================
# Configuration Loading
# =============================================================================

_config_cache: Optional[dict] = None


def resolve_env(value: Any) -> Any:
    """Replace a "${VAR}" string with the environment value of VAR."""
    if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
        env_var = value[2:-1]
        return os.getenv(env_var, "")
    return value


def load_config(config_path: str = DEFAULT_CONFIG_PATH, force_reload: bool = False) -> dict:
    """
    Load configuration from YAML file.
    Resolves environment variables and caches result.

    Args:
        config_path: Path to config file
        force_reload: Force reload from disk

    Returns:
        Configuration dictionary (empty if the file does not exist)
    """
    global _config_cache

    if _config_cache is not None and not force_reload:
        return _config_cache

    if not os.path.exists(config_path):
        logger.warning(f"Config file not found: {config_path}, using defaults")
        config: dict = {}
    else:
        with open(config_path, "r") as f:
            config = yaml.safe_load(f) or {}

    for key, value in config.items():
        config[key] = resolve_env(value)

    _config_cache = config
    return config


# =============================================================================
# Retry Decorator with Exponential Backoff
# =============================================================================

def retry_with_backoff(
    max_retries: Optional[int] = None,
    backoff_base: Optional[float] = None,
    exceptions: tuple = (Exception,),
    on_failure: Optional[Callable[[Exception, int], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator for retry with exponential backoff.

    The wait before attempt n+1 is backoff_base * 2**n seconds.

    Args:
        max_retries: Max attempts (from config if None)
        backoff_base: First backoff delay in seconds (from config if None)
        exceptions: Exceptions to catch
        on_failure: Callback on each failure (exception, attempt)
        sleep: Sleep function, replaceable in tests

    Returns:
        Decorated function
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            retries = max_retries
            base = backoff_base
            if retries is None or base is None:
                config = load_config()
                retries = retries if retries is not None else config.get("persist_max_retries", 3)
                base = base if base is not None else config.get("persist_backoff_base", 0.5)
            retries = max(1, retries)

            last_exception: Optional[Exception] = None

            for attempt in range(retries):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    wait_time = base * (2 ** attempt)

                    if on_failure:
                        on_failure(e, attempt)
                    else:
                        logger.warning(
                            f"{func.__name__} attempt {attempt + 1}/{retries} failed: {e}. "
                            f"Retry in {wait_time:.1f}s..."
                        )

                    if attempt < retries - 1:
                        sleep(wait_time)

            # All retries exhausted
            raise last_exception

        return wrapper
    return decorator


# =============================================================================
# OCR Concurrency Limiter
# =============================================================================

class OCRLimiter:
    """Thread-safe semaphore bounding concurrent render + OCR work."""

    def __init__(self, config: Optional[dict] = None):
        self.config = config if config is not None else load_config()
        self.max_concurrent = max(1, int(self.config.get("max_concurrent_ocr", 2)))
        self._sem = threading.Semaphore(self.max_concurrent)

    def acquire(self) -> None:
        """Acquire OCR slot."""
        self._sem.acquire()

    def release(self) -> None:
        """Release OCR slot."""
        self._sem.release()

    @contextmanager
    def limit(self) -> Iterator[None]:
        """Context manager holding one OCR slot."""
        self.acquire()
        try:
            yield
        finally:
            self.release()


# Global OCR limiter
_ocr_limiter: Optional[OCRLimiter] = None
_ocr_limiter_sig: Optional[tuple] = None
_ocr_limiter_lock = threading.Lock()


def get_ocr_limiter(config: Optional[dict] = None) -> OCRLimiter:
    """Return a cached OCR limiter, reinitializing only on config change."""
    global _ocr_limiter
    global _ocr_limiter_sig

    def _sig(cfg: Optional[dict]) -> tuple:
        cfg = cfg if cfg is not None else load_config()
        return (cfg.get("max_concurrent_ocr", 2),)

    with _ocr_limiter_lock:
        if _ocr_limiter is None:
            _ocr_limiter = OCRLimiter(config)
            _ocr_limiter_sig = _sig(config)
            logger.info(f"Initialized OCR limiter: max_concurrent_ocr={_ocr_limiter_sig[0]}")
            return _ocr_limiter

        if config is not None:
            new_sig = _sig(config)
            if new_sig != _ocr_limiter_sig:
                logger.info(
                    "Reinitializing OCR limiter due to config change: "
                    f"{_ocr_limiter_sig} -> {new_sig}"
                )
                _ocr_limiter = OCRLimiter(config)
                _ocr_limiter_sig = new_sig

        return _ocr_limiter
