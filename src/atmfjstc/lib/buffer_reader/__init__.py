"""
A cursor-based reader for binary data that is fully loaded in memory.

This package can come in useful if you need to decode binary blobs (file formats, network payloads) that are already
available as `bytes`, a `bytearray`, a memory-mapped file or any other object supporting the buffer protocol. The
`BufferReader` offers functions for extracting ints, floats, bools, strings and homogeneous arrays of these, keeping
track of the position and checking that no read goes past the end of the data.

Note that owing to the interpreted nature of Python, this is not meant for performance-critical decoding of huge data
sets. The buffer is never copied, however, so large blobs can be navigated cheaply.
"""

__version__ = '1.0.0'
