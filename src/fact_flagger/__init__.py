"""fact-flagger — tiered, cached claim flagging for web pages."""

from .annotator import PageAnnotator
from .cache import FingerprintCache
from .cache_sqlite import SqliteFingerprintCache
from .config import create_annotator, load_config, load_from_yaml
from .extractor import SentenceExtractor, parse_html
from .highlighter import DOMHighlighter
from .orchestrator import ClassificationOrchestrator, FlaggerConfig
from .progress import ProgressEstimator
from .tiers import HttpRemoteClassifier, OllamaLocalModel, UserGesture
from .types import BatchResult, CategoryDefinition, ClassificationResult, PassSession, SentenceRecord

__all__ = [
    "PageAnnotator",
    "FingerprintCache", "SqliteFingerprintCache",
    "create_annotator", "load_config", "load_from_yaml",
    "SentenceExtractor", "parse_html",
    "DOMHighlighter",
    "ClassificationOrchestrator", "FlaggerConfig",
    "ProgressEstimator",
    "HttpRemoteClassifier", "OllamaLocalModel", "UserGesture",
    "BatchResult", "CategoryDefinition", "ClassificationResult", "PassSession", "SentenceRecord",
]
__version__ = "0.1.0"
