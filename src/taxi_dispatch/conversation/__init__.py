"""Requester conversation — the FSM and the inbound message router.

Learn: fsm.py is pure (states, events, effects); router.py performs the
effects against the dispatch service. Import them from their modules.
"""
