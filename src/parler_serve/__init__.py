"""
parler-serve: HTTP serving layer for Parler-TTS.

Turns text plus a free-form voice description into speech, serving many
concurrent clients from one exclusive model instance.

Key Features:
    - Form-based API (/api/tts) streaming WAV with the effective seed
    - Strict FIFO scheduling with bounded queue, timeouts and cancellation
    - Automatic compute backend selection (CUDA, Metal, MKL, Accelerate, CPU)
    - Health and debug introspection (/api/health, /api/debug)
    - Prometheus metrics (/metrics)

Example Usage:
    $ parler-serve --port 8039
    $ curl -F text="Hello!" -F description="A calm male voice." \\
        http://localhost:8039/api/tts -o hello.wav
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
