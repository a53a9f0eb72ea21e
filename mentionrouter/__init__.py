"""
Mention router — wakes agents named on the meeting board.

Watches every board channel, delivers wake requests to the agents a broadcast
mentions, and optionally asks a judgment service which other agents should
look at it.
"""
