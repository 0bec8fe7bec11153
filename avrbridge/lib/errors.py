# avrbridge
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""Exception hierarchy shared by the receiver client and the coordinator."""


class BridgeError(Exception):
    """Base class for everything raised by avrbridge."""


class CommandError(BridgeError):
    """A command could not be delivered to the receiver."""


class TransportError(CommandError):
    """Timeout or connection failure talking to a receiver."""


class ProtocolError(CommandError):
    """Receiver answered, but with a bad status or an unreadable document."""


class ConfigurationError(BridgeError):
    """Missing or invalid receiver configuration."""


class RequestError(BridgeError):
    """A volume/mute request from the host is malformed or targets no receiver."""
