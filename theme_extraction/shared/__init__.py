"""
Shared utilities used across all domain layers.

- stopwords.py: stop words, research-term whitelist, noise filter, tokenizer
"""

from theme_extraction.shared.stopwords import (
    STOP_WORDS,
    RESEARCH_TERM_WHITELIST,
    is_noise_word,
    tokenize,
)
