"""Peer transport bootstrapped from manually exchanged session descriptions.

There is no signaling server: descriptions are copied between operators out
of band, and once the transport connects everything else (call signaling,
chat, media renegotiation) travels over its single control channel.
"""
