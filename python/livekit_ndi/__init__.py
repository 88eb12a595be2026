"""LiveKit to NDI bridge.

Joins a LiveKit room as a hidden robot participant and republishes every
remote participant as a named NDI source, so that vision mixers and other NDI
receivers on the local network can pick up the call. The modules here focus
on:

* Mapping LiveKit video buffer types to the FourCC codes the NDI SDK accepts,
  warning about layouts that can only be approximated.
* Converting LiveKit's interleaved 16-bit PCM into the float32 samples NDI
  expects.
* Creating exactly one NDI sender per participant identity and routing every
  subscribed track's frames into it without buffering or reordering.

Runtime expectations:

* The :mod:`livekit` and :mod:`livekit.api` packages must be installed to join
  rooms.
* The :mod:`cyndilib` package (>=0.0.8) must be installed to publish NDI
  sources.
* A ``servers.json`` file lists the LiveKit deployments to choose from, each
  entry holding ``NAME``, ``LIVEKIT_URL``, ``LIVEKIT_API_KEY`` and
  ``LIVEKIT_API_SECRET``.

The top-level API re-exports :class:`~livekit_ndi.bridge.LiveKitNDIBridge`,
:class:`~livekit_ndi.bridge.BridgeConfig`, and
:class:`~livekit_ndi.bridge.ParticipantMetrics` for convenience.
"""

from .bridge import BridgeConfig, LiveKitNDIBridge, ParticipantMetrics

__all__ = ["BridgeConfig", "LiveKitNDIBridge", "ParticipantMetrics"]
