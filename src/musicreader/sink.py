# src/musicreader/sink.py
"""
Synthesizer collaborators. The scheduler only ever talks to a ``Sink``;
sound generation is the sink's business.
"""
from __future__ import annotations
import logging
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

import mido

if TYPE_CHECKING:
    from .scheduler import TimedCommand

log = logging.getLogger(__name__)

CC_VOLUME = 7
CC_PAN = 10


class Sink:
    """Fire-and-forget consumer. Every hook is a no-op by default."""

    def send(self, command: "TimedCommand") -> None:
        pass

    def setup_channel(self, channel: int, program: int, volume: float, pan: float) -> None:
        pass

    def set_volume(self, volume: float) -> None:
        pass

    def close(self) -> None:
        pass


class RecordingSink(Sink):
    """Keeps everything it receives; handy for dry runs and tests."""

    def __init__(self):
        self.commands: List["TimedCommand"] = []
        self.channels: Dict[int, Tuple[int, float, float]] = {}
        self.volume: Optional[float] = None
        self.closed = False

    def send(self, command):
        self.commands.append(command)

    def setup_channel(self, channel, program, volume, pan):
        self.channels[channel] = (program, volume, pan)

    def set_volume(self, volume):
        self.volume = volume

    def close(self):
        self.closed = True

    def clear(self):
        self.commands.clear()


class MidoPortSink(Sink):
    """Sends commands to a mido output port (hardware, virtual or software synth)."""

    def __init__(self, port_name: Optional[str] = None, port=None):
        self._port = port if port is not None else mido.open_output(port_name)
        self._master = 1.0
        self._channel_volume: Dict[int, float] = {}
        log.info("sink: using MIDI output %r", getattr(self._port, "name", port_name))

    @staticmethod
    def available_ports() -> List[str]:
        return list(mido.get_output_names())

    def send(self, command):
        if command.is_note_on:
            msg = mido.Message("note_on", channel=command.channel, note=command.pitch, velocity=command.velocity)
        else:
            msg = mido.Message("note_off", channel=command.channel, note=command.pitch, velocity=0)
        self._port.send(msg)

    def setup_channel(self, channel, program, volume, pan):
        self._channel_volume[channel] = volume
        self._port.send(mido.Message("program_change", channel=channel, program=program))
        self._send_volume(channel)
        self._port.send(mido.Message("control_change", channel=channel, control=CC_PAN, value=pan_to_cc(pan)))

    def set_volume(self, volume):
        self._master = volume
        for ch in self._channel_volume:
            self._send_volume(ch)

    def _send_volume(self, channel: int):
        value = int(round(127 * self._channel_volume.get(channel, 1.0) * self._master))
        self._port.send(mido.Message("control_change", channel=channel, control=CC_VOLUME,
                                     value=max(0, min(127, value))))

    def close(self):
        if self._port is None:
            return
        self._port.panic()
        self._port.close()
        self._port = None


def pan_to_cc(pan: float) -> int:
    return max(0, min(127, int(round((pan + 1.0) * 63.5))))
