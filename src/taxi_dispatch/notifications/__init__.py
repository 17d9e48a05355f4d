"""Outbound notifications — transport, reliable sender, batched fan-out.

Learn: Three layers, each wrapping the one below:
1. MessagingTransport  — raw send to the chat gateway (may fail)
2. ReliableSender      — timeout + retries + session repair per recipient
3. NotificationDispatcher — batches and throttles a broadcast to N drivers
"""
