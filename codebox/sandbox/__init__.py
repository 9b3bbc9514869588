"""
Container sandbox: Docker backend, provisioning, supervision and output framing.
"""

from .backend import DockerBackend
from .demux import DemuxedOutput, Frame, demux, iter_frames
from .diagnostics import DoctorCheck, run_doctor
from .orchestrator import SandboxHandle, SandboxOrchestrator
from .packager import bundle_files, pack, write_bundle
from .supervisor import ExecutionSupervisor

__all__ = [
    "DemuxedOutput",
    "DockerBackend",
    "DoctorCheck",
    "ExecutionSupervisor",
    "Frame",
    "SandboxHandle",
    "SandboxOrchestrator",
    "bundle_files",
    "demux",
    "iter_frames",
    "pack",
    "run_doctor",
    "write_bundle",
]
