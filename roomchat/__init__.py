"""
roomchat - peer-to-peer room chat

A chat node built from:
- secp256k1 peer identities
- an authenticated, encrypted TCP transport
- room-scoped publish/subscribe with flood gossip
- a command/event bridge for front ends
"""
