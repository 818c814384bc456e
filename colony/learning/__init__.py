"""
Colony Learning Layer

Reflexion over task outcomes and promotion of consistent successes into
skills.
"""

from colony.learning.critique import Critic, HeuristicCritic, ModelCritic
from colony.learning.engine import LearningEngine, encode_trace

__all__ = [
    "Critic",
    "HeuristicCritic",
    "LearningEngine",
    "ModelCritic",
    "encode_trace",
]
