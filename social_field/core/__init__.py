"""
Core engines: clustering, convergence, phase sync, pooled particles.
"""

from .clustering import ClusterOptions, Clusterer, SocialCluster, filter_k_anonymous, merge_clusters, merge_distance
from .convergence import (
    CandidatePolicy,
    ConvergenceEvent,
    ConvergenceKind,
    ConvergenceOptions,
    ConvergencePredictor,
    closest_approach,
    select_candidate,
)
from .convergence_monitor import ConvergenceMonitor
from .field import FieldFrame, SocialField
from .particle_pool import ParticlePool, QualityTier
from .phase_sync import PhaseState, PhaseSynchronizer, coupling_pairs_from_groups
from .precipitation import EmitterOptions, Particle, PrecipitationEmitter
from .presence import PresencePoint, TrackedEntity, ingest_presence
from .snooze import SnoozeRegistry

__all__ = ['ClusterOptions', 'Clusterer', 'SocialCluster', 'filter_k_anonymous', 'merge_clusters',
           'merge_distance', 'CandidatePolicy', 'ConvergenceEvent', 'ConvergenceKind',
           'ConvergenceOptions', 'ConvergencePredictor', 'closest_approach', 'select_candidate',
           'ConvergenceMonitor', 'FieldFrame', 'SocialField', 'ParticlePool', 'QualityTier',
           'PhaseState', 'PhaseSynchronizer', 'coupling_pairs_from_groups', 'EmitterOptions',
           'Particle', 'PrecipitationEmitter', 'PresencePoint', 'TrackedEntity', 'ingest_presence',
           'SnoozeRegistry']
