"""rotaguard - crash-safe context rotation for long-running agents."""

__version__ = "0.1.0"
__logo__ = "🔄"
