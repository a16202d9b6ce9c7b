"""
Error handling utilities for LLM calls
Distinguishes between fatal provider errors and retryable ones
"""
import logging

logger = logging.getLogger("chapterindex.errors")

FATAL_PATTERNS = [
    'insufficient balance',      # Payment/balance issues
    'error code: 402',           # Payment required (HTTP 402)
    'invalid api key',           # API key problems
    'invalid_api_key',
    'incorrect api key',
    'error code: 401',           # Unauthorized (HTTP 401)
    'unauthorized',
    'authentication failed',
    'authentication error',
    'error code: 403',           # Forbidden (HTTP 403)
    'forbidden',
    'api key not valid',
    'invalid authentication',
    'account deactivated',
    'account suspended',
    'quota exceeded',            # Quota exhausted
    'insufficient_quota',
]


def is_fatal_llm_error(error: BaseException) -> bool:
    """
    Check if an LLM error is fatal, i.e. retrying the same request cannot help

    Fatal errors include:
    - Insufficient balance / exhausted quota (402)
    - Authentication failures (401, 403)
    - Invalid or deactivated API keys
    """
    error_msg = str(error).lower()
    return any(pattern in error_msg for pattern in FATAL_PATTERNS)


def fatal_error_hint(error: BaseException) -> str:
    """Short remediation hint for a fatal provider error"""
    error_msg = str(error).lower()

    if 'insufficient balance' in error_msg or '402' in error_msg or 'quota' in error_msg:
        return "Recharge the provider account or switch --provider"
    if 'api key' in error_msg or '401' in error_msg or 'unauthorized' in error_msg:
        return "Check the API key in .env (e.g. DEEPSEEK_API_KEY=sk-..., OPENAI_API_KEY=sk-...)"
    if '403' in error_msg or 'forbidden' in error_msg:
        return "Verify the API key has access to the requested model"
    return "Check the provider service status and the .env configuration"


def log_fatal_error(error: BaseException, context: str = "LLM operation") -> None:
    """Log a fatal provider error with a hint; the caller re-raises"""
    logger.error("=" * 70)
    logger.error(f"FATAL ERROR during {context}: {error}")
    logger.error(f"Hint: {fatal_error_hint(error)}")
    logger.error("=" * 70)
