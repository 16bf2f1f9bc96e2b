"""
Analyzer Registry

Central registry of inference providers.
The active provider is chosen by configuration, never by inspecting types.
"""
from typing import Callable

from photobatch.analysis.base import PhotoAnalyzer
from photobatch.analysis.claude_vision import ClaudeVisionAnalyzer
from photobatch.analysis.mock import MockAnalyzer
from photobatch.config import Settings, settings as default_settings


def _claude(settings: Settings) -> PhotoAnalyzer:
    return ClaudeVisionAnalyzer(
        model=settings.CLAUDE_MODEL,
        max_retries=settings.ANALYZER_MAX_RETRIES,
        retry_delay=settings.ANALYZER_RETRY_DELAY_SECONDS,
        timeout=settings.ANALYZER_TIMEOUT_SECONDS,
    )


def _mock(settings: Settings) -> PhotoAnalyzer:
    return MockAnalyzer(
        delay=settings.MOCK_ANALYZER_DELAY_SECONDS,
        max_retries=settings.ANALYZER_MAX_RETRIES,
        retry_delay=settings.ANALYZER_RETRY_DELAY_SECONDS,
        timeout=settings.ANALYZER_TIMEOUT_SECONDS,
    )


# Registry: provider name -> factory
ANALYZER_REGISTRY: dict[str, Callable[[Settings], PhotoAnalyzer]] = {
    "claude": _claude,
    "mock": _mock,
}


def get_analyzer(name: str | None = None, settings: Settings | None = None) -> PhotoAnalyzer:
    """Build the configured analyzer."""
    settings = settings or default_settings
    name = name or settings.ANALYZER_PROVIDER
    factory = ANALYZER_REGISTRY.get(name)
    if factory is None:
        raise ValueError(f"Unknown analyzer provider: {name}. Available: {', '.join(list_analyzers())}")
    return factory(settings)


def register_analyzer(name: str, factory: Callable[[Settings], PhotoAnalyzer]) -> None:
    """Register a new provider."""
    ANALYZER_REGISTRY[name] = factory


def list_analyzers() -> list[str]:
    return list(ANALYZER_REGISTRY.keys())
