from reviewline.callbacks.handler import LoggingPipelineCallbackHandler, PipelineCallbackHandler

__all__ = ["LoggingPipelineCallbackHandler", "PipelineCallbackHandler"]
