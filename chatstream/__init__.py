"""chatstream - streaming generation and tool permission core for chat assistants."""

__version__ = "0.1.0"

from chatstream.config import Config
from chatstream.orchestrator import StreamGenerationOrchestrator

__all__ = ["Config", "StreamGenerationOrchestrator", "__version__"]
