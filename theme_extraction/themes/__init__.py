"""
Theme extraction stages.

- code_extractor.py: sources → codes (LLM batches or local frequency codes)
- splitting.py: long codes → grounded atomic sub-codes
- clustering.py / diversity.py: adaptive k-means++, bisecting, clique merging
- labeling.py: cluster → label, description, keywords
- provenance.py: theme → contributing sources
- saturation.py: Bayesian / power-law / permutation saturation analysis
- purposes.py: per-purpose parameters, source and theme validation
- run_manager.py: state machine records, progress, cancellation
- engine.py: the orchestrator
"""

from theme_extraction.themes.clustering import ClusteringEngine
from theme_extraction.themes.code_extractor import CodeExtractor
from theme_extraction.themes.engine import ThemeExtractionPipeline
from theme_extraction.themes.labeling import ThemeLabeler
from theme_extraction.themes.provenance import ProvenanceTracker, index_by_source
from theme_extraction.themes.purposes import get_purpose_config, validate_sources, validate_themes
from theme_extraction.themes.run_manager import CancellationToken, ProgressTracker, RunManager
from theme_extraction.themes.saturation import SaturationAnalyzer
from theme_extraction.themes.splitting import CodeSplitter

__all__ = [
    "ClusteringEngine",
    "CodeExtractor",
    "CodeSplitter",
    "ThemeExtractionPipeline",
    "ThemeLabeler",
    "ProvenanceTracker",
    "index_by_source",
    "SaturationAnalyzer",
    "get_purpose_config",
    "validate_sources",
    "validate_themes",
    "CancellationToken",
    "ProgressTracker",
    "RunManager",
]
