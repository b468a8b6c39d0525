"""Human-memorable worker names."""

from __future__ import annotations

import random

ADJECTIVES = (
    "happy", "clever", "gentle", "brave", "swift", "wise", "bold", "calm", "eager", "fair",
    "keen", "kind", "noble", "proud", "quiet", "sharp", "smart", "strong", "warm", "young",
)
ANIMALS = (
    "panda", "fox", "bear", "wolf", "lion", "tiger", "eagle", "hawk", "dove", "owl",
    "deer", "rabbit", "otter", "seal", "whale", "shark", "dolphin", "crow", "raven", "swan",
)


def generate_worker_name(rng: random.Random | None = None) -> str:
    """``adjective-animal``, e.g. ``calm-otter``."""
    chooser = rng or random
    return f"{chooser.choice(ADJECTIVES)}-{chooser.choice(ANIMALS)}"
