# Local text-completion engine
#
# This package holds the generation pipeline, independent of any HTTP layer.
#
# Key components:
#   - runtimes/     Model runtime interface + implementations
#   - registry.py   Maps runtime names to runtime classes
#   - prompt.py     Prompt templating
#   - sampling.py   Sampler chain and penalty history
#   - stop.py       Stop-marker detection
#   - session.py    Per-request decode state machine
#   - engine.py     Owns the loaded model, serializes sessions
#   - service.py    Request validation and response envelopes
