"""Per-connection turn pipeline.

The multiplexer feeds the graph runtime, the coordinator turns its outputs
into client messages, and the inbound handler routes client messages back in.
"""
