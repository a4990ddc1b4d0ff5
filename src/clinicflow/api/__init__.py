"""
API module for clinicflow.

Provides REST API routes for:
- Referral workflow transitions and timelines
- Intake package export, download and deletion
- Workflow automation jobs
- Live telemetry over websocket
"""
