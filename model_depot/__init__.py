"""
model-depot: installs, tracks and selects large on-device model files over
unreliable networks.
"""

__version__ = "0.1.0"
