"""Pipeline components.

This package contains the payload normalizer, the storage type adapter, the
shared accumulator and flush policy, the Postgres sink, the Redis fan-out
publisher, and the coordinator that ties them together.
"""
