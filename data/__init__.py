# Data layer for the plan budget subsystem

from .store import PlanStore, InMemoryPlanStore, StoreError, VersionRecorder, InMemoryVersionRecorder

__all__ = ['PlanStore', 'InMemoryPlanStore', 'StoreError', 'VersionRecorder', 'InMemoryVersionRecorder']
