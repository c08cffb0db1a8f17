"""Generation strategies: standard, candidate + judge, feedback loop."""
from .base import GenerationRequest, GenerationServices, IGenerationStrategy
from .standard import StandardStrategy
from .candidate import CandidateStrategy
from .feedback import FeedbackLoopStrategy


def build_strategy(step, services: GenerationServices) -> IGenerationStrategy:
    """Standard, fanned out into candidates when K > 1, refined when loops > 0."""
    standard = StandardStrategy(services)
    strategy: IGenerationStrategy = standard
    if step.candidates > 1:
        strategy = CandidateStrategy(strategy, standard, services)
    if step.feedback is not None and step.feedback_loops > 0:
        strategy = FeedbackLoopStrategy(strategy, standard, services)
    return strategy


__all__ = [
    'GenerationRequest',
    'GenerationServices',
    'IGenerationStrategy',
    'StandardStrategy',
    'CandidateStrategy',
    'FeedbackLoopStrategy',
    'build_strategy',
]
