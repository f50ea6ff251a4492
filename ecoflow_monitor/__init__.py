"""
EcoFlow Monitor

Polls the EcoFlow cloud API for power station telemetry, stores readings in
Postgres and serves bucketed history over HTTP.
"""

__version__ = "1.0.0"
