from .cross_encoder import CrossEncoderReranker
from .jina import JinaReranker
from .ollama import OllamaReranker

__all__ = ["CrossEncoderReranker", "JinaReranker", "OllamaReranker"]
