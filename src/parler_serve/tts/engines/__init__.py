"""
Engine Implementations.

Each engine subclasses SynthesisEngine and implements load() and
generate(). Engines are imported lazily by create_engine() so their heavy
dependencies load only when selected.

Available Engines:
    - ParlerEngine: Parler-TTS (text + voice description), torch/transformers
"""
