class HomeControlError(Exception):
    """Base class for controller errors."""


# sensors
class SensorError(HomeControlError):
    """A sensor could not produce a reading; callers skip it."""

class ReadFailure(SensorError): pass
class InvalidCRC(SensorError): pass
class InvalidFormat(SensorError): pass
class ParseFailure(SensorError): pass

class HostHealthError(HomeControlError): pass


# actuators / regulation
class UnknownActuator(HomeControlError): pass
class InvalidSetpoint(HomeControlError, ValueError): pass
class ConfigurationError(HomeControlError): pass


# sms gateway
class GatewayError(HomeControlError): pass
class SessionError(GatewayError): pass
class TokenError(GatewayError): pass
class MessageDecodeError(GatewayError): pass
