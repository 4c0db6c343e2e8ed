"""Real-time event delivery and reconciliation.

Events arrive on the websocket channel, are typed by ``events``, and merged
into the registry by a single reconciler loop per client.
"""
