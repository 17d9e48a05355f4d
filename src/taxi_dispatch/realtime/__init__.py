"""Real-time ride events over Redis pub/sub.

Learn: Services publish after their database write commits. Consumers
(an operator dashboard, analytics) subscribe to the rides channel.
"""
