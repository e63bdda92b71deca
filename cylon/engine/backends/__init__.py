# Compute backends
#
# Each backend implements the DeviceContext interface:
#   - load(handle)        materialize weights on the device (fails fast)
#   - step(ids, cache)    one forward pass -> next-token logits + cache
#
# The scheduler and decode loop use contexts to stay device-agnostic.

from .base import DeviceContext, ModelHandle, StepOutput

__all__ = ["DeviceContext", "ModelHandle", "StepOutput"]
