"""Devtools transport -- launch, discovery, and the debugging session.

Provides launch_client() and discover_target() for starting the desktop
client with remote debugging enabled and locating its shared worker, and
TransportSession, which owns the devtools socket, request/response
correlation and reconnection.
"""
