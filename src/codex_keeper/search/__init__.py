from codex_keeper.search.scorer import RelevanceScorer, ScoredDocument, ScoringWeights

__all__ = ["RelevanceScorer", "ScoredDocument", "ScoringWeights"]
