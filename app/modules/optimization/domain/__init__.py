from .recommendations import RecommendationDraft, RecommendationEngine, evaluate_resource

__all__ = ["RecommendationDraft", "RecommendationEngine", "evaluate_resource"]
