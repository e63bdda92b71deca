# Device-agnostic inference engine
#
# This package turns chat requests into generation sessions and runs them
# on compute backends.
#
# Key components:
#   - backends/         DeviceContext implementations + model loading
#   - registry.py       Maps backend / model-family names to implementations
#   - session.py        Generation session state
#   - decode_loop.py    Prefill + sample loop, the only place status changes
#   - scheduler.py      Admission, priority queue, dispatch to contexts
#   - chat_engine.py    Request validation and async event streaming
