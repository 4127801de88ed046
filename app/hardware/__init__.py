"""
Dispenser hardware access.
"""

from app.hardware.actuator import ActuatorChannel, ChannelState, HardwareError

__all__ = ['ActuatorChannel', 'ChannelState', 'HardwareError']
