"""Protocol adaptation -- captured frames to typed events.

Provides FrameDecoder for stripping the metadata prefix of captured socket
frames, the participant markup tokenizer, and EnvelopeClassifier for
routing decoded envelopes to typed events or the meeting correlator.
"""
