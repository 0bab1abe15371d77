"""telerelay - Host telemetry relay.

An agent runs on each observed host, collects local state and streams it
in numbered batches to a central server that validates, deduplicates and
forwards it to downstream sinks.
"""

__version__ = "0.1.0"
__author__ = "telerelay Team"
