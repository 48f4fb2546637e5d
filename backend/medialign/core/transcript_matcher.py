"""Transcript Matcher - scores sampled dialogue against episode synopses.

The default scorer is set overlap (Jaccard) on case-folded words. It is a
strategy: subclasses override ``score_all`` to plug in another similarity
(see TfidfTranscriptMatcher) without changing how the best episode is picked.
"""

import logging
import string
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.metrics.pairwise import cosine_similarity as sklearn_cosine_similarity

if TYPE_CHECKING:
    # models imports core.clock, so a runtime import here would be circular
    from medialign.models import Episode

logger = logging.getLogger(__name__)


@dataclass
class TranscriptMatch:
    """Best episode for a set of transcripts. episode is None when there is no evidence."""

    episode: "Episode | None"
    score: float


def tokenize(text: str) -> set[str]:
    """Case-folded whitespace tokens with surrounding punctuation trimmed."""
    tokens = (word.strip(string.punctuation) for word in text.casefold().split())
    return {token for token in tokens if token}


def jaccard_similarity(a: str, b: str) -> float:
    """|A ∩ B| / |A ∪ B| over the token sets of two texts."""
    a_tokens, b_tokens = tokenize(a), tokenize(b)
    union = a_tokens | b_tokens
    if not union:
        return 0.0
    return len(a_tokens & b_tokens) / len(union)


class TranscriptMatcher:
    """Picks the episode whose synopsis best matches the combined transcripts."""

    def score_all(self, text: str, episodes: Sequence["Episode"]) -> list[float]:
        """Score text against each episode's synopsis, in the given order."""
        return [jaccard_similarity(text, episode.synopsis or "") for episode in episodes]

    def match(self, transcripts: Sequence[str], episodes: Sequence["Episode"]) -> TranscriptMatch:
        """Return the best-scoring episode.

        Ties go to the earliest (season, episode). Empty inputs, or no
        overlap with any synopsis, give score 0 and no episode.
        """
        text = " ".join(t for t in transcripts if t).strip()
        if not text or not episodes:
            return TranscriptMatch(episode=None, score=0.0)

        ordered = sorted(episodes, key=lambda e: (e.season_number, e.episode_number))
        scores = self.score_all(text, ordered)

        best_episode: "Episode | None" = None
        best_score = 0.0
        for episode, score in zip(ordered, scores, strict=True):
            if score > best_score:
                best_episode, best_score = episode, float(score)

        if best_episode is not None:
            logger.debug(
                f"Best transcript match: {best_episode.code} ({best_score:.3f}) "
                f"out of {len(ordered)} episodes"
            )
        return TranscriptMatch(episode=best_episode, score=best_score)


class TfidfTranscriptMatcher(TranscriptMatcher):
    """TF-IDF cosine similarity against synopses, fitted per call on the candidate set."""

    def score_all(self, text: str, episodes: Sequence["Episode"]) -> list[float]:
        corpus = [episode.synopsis or "" for episode in episodes]
        vectorizer = TfidfVectorizer(analyzer="word", ngram_range=(1, 2), sublinear_tf=True)
        try:
            ref_matrix = vectorizer.fit_transform(corpus)
        except ValueError:
            # Every synopsis is empty or stop-words only
            return [0.0] * len(episodes)

        query = vectorizer.transform([text])
        return sklearn_cosine_similarity(query, ref_matrix)[0].tolist()
