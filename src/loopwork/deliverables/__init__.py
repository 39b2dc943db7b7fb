from .registry import SEED_PRODUCER, DeliverableRegistry

__all__ = ["SEED_PRODUCER", "DeliverableRegistry"]
