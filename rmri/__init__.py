"""
RMRI: recursive multi-tier research-gap synthesis.

Runs a corpus of papers through three agent tiers per refinement round
(micro extraction, meso clustering, meta ranking) until the top-ranked
gaps stabilize or the round budget is spent.
"""

__version__ = "0.1.0"
