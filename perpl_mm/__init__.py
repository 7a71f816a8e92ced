"""
Perpl market making bot.

Keeps resting or aggressive orders on a Perpl perpetual market by reacting
to exchange state events and periodically re-evaluating the desired order set.
"""

__version__ = "0.3.0"
