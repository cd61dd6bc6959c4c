"""Project version constants.

These constants are used in logs and in the SDK user agent so that a running
consumer can be traced back to a specific build.
"""

ENGINE_NAME: str = "eventsink"
ENGINE_VERSION: str = "0.1.0"
