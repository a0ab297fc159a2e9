# Orchestration module for microVM lifecycle management
from .handle import VMHandle
from .supervisor import ProcessSupervisor
from .vm_manager import VMManager

__all__ = ["VMManager", "VMHandle", "ProcessSupervisor"]
