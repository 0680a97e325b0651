"""
Consolidated stopword sets and token filters — single source for the
frequency-based code extraction and local theme labeling.

Used by:
  - theme_extraction.themes.code_extractor (local extraction mode)
  - theme_extraction.themes.labeling (keyword + phrase selection)
"""
from __future__ import annotations

import re
from typing import List

# English function words plus common research-prose filler.
STOP_WORDS = frozenset({
    # articles, conjunctions, prepositions
    "the", "a", "an", "and", "or", "but", "nor", "yet", "so",
    "in", "on", "at", "to", "for", "of", "with", "by", "from", "as",
    "into", "through", "during", "before", "after", "above", "below",
    "between", "under", "about", "against", "among", "around", "behind",
    # pronouns
    "i", "you", "he", "she", "it", "we", "they", "them", "their", "this",
    "that", "these", "those", "my", "your", "his", "her", "its", "our", "us",
    # be / have / do, modals
    "is", "am", "are", "was", "were", "been", "being", "be",
    "have", "has", "had", "having", "do", "does", "did", "doing",
    "will", "would", "should", "could", "may", "might", "must", "can",
    # adverbs, quantifiers
    "also", "very", "just", "only", "even", "such", "more", "most",
    "some", "any", "all", "both", "each", "few", "many", "much",
    "other", "another", "same", "own", "not", "no", "none", "nothing",
    "neither", "than", "too", "now", "then", "once", "again", "further",
    "here", "there", "which", "who", "whom", "whose", "what", "when",
    "where", "why", "how", "while", "within", "without", "across", "via",
    # research filler that never discriminates a theme
    "study", "studies", "paper", "research", "results", "result", "using",
    "used", "use", "based", "however", "therefore", "thus", "found", "show",
    "shows", "shown", "one", "two", "three", "new", "well", "like",
})

# Terms that look like noise (digits, hyphens) but carry meaning.
RESEARCH_TERM_WHITELIST = frozenset({
    "covid-19", "covid19", "sars-cov-2", "long-covid",
    "h1n1", "h5n1", "h7n9", "hiv-1", "hiv-2",
    "p-value", "alpha-level", "t-test", "f-test", "z-test",
    "r-squared", "r2", "chi-square", "chi2", "anova", "ancova", "manova",
    "meta-analysis", "meta-analytic", "rct", "n-of-1",
    "mrna", "dna", "rna", "crispr", "cas9",
    "ml", "ai", "nlp", "llm", "gpt", "gpt-3", "gpt-4",
    "bert", "vr", "ar", "xr", "iot", "api", "sdk",
    "2d", "3d", "4d", "5d", "5g", "6g", "wi-fi", "wi-fi-6",
    "type-1", "type-2",
})

MIN_WORD_LENGTH = 3

_RE_PURE_NUMBER = re.compile(r"^\d+$")
_RE_COMPLEX_ABBREV = re.compile(r"^[a-z]+-\d+-[a-z]+$", re.IGNORECASE)
_RE_LONG_ACRONYM = re.compile(r"^[A-Z]{7,}$")
_RE_HTML_ENTITY = re.compile(r"^&[#\w]+;?$")
_RE_HAS_ALNUM = re.compile(r"[a-z0-9]", re.IGNORECASE)
_RE_TOKEN = re.compile(r"[A-Za-z0-9][A-Za-z0-9\-]*")


def is_noise_word(word: str) -> bool:
    """True for numbers, digit-heavy strings, instrument codes and encoding debris."""
    if not word:
        return True
    if word.lower() in RESEARCH_TERM_WHITELIST:
        return False
    if _RE_PURE_NUMBER.match(word):
        return True
    digits = sum(ch.isdigit() for ch in word)
    if digits / len(word) > 0.5:
        return True
    if _RE_COMPLEX_ABBREV.match(word):
        return True
    if _RE_LONG_ACRONYM.match(word):
        return True
    if _RE_HTML_ENTITY.match(word):
        return True
    if len(word) == 1:
        return True
    if not _RE_HAS_ALNUM.search(word):
        return True
    return False


def tokenize(text: str) -> List[str]:
    """Lowercase content tokens with stop words, short words and noise removed."""
    tokens = []
    for raw in _RE_TOKEN.findall(text or ""):
        if is_noise_word(raw):
            continue
        word = raw.lower().strip("-")
        if word in RESEARCH_TERM_WHITELIST:
            tokens.append(word)
            continue
        if len(word) < MIN_WORD_LENGTH or word in STOP_WORDS:
            continue
        tokens.append(word)
    return tokens
