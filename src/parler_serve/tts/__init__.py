"""
Synthesis Pipeline Components.

    - engine.py: Engine interface, exclusive resource, and factory
    - engines/: Engine implementations (Parler-TTS)
    - scheduler.py: FIFO request scheduler with timeouts and cancellation
    - encoder.py: WAV encoding and chunked streaming
"""
