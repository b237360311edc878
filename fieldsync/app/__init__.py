"""
Application layer for the field client.
"""

from .collect_service import CollectService, ServiceState, ServiceStatus, SubmissionResult

__all__ = ['CollectService', 'ServiceState', 'ServiceStatus', 'SubmissionResult']
