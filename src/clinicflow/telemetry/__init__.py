"""
Live telemetry broadcasting.
"""

from clinicflow.telemetry.registry import ConnectionRegistry, TelemetryConnection, TelemetrySink

__all__ = ["ConnectionRegistry", "TelemetryConnection", "TelemetrySink"]
