from .base import BrokerClient, TextGenerationClient
from .broker_http import HttpBrokerClient
from .generation_http import HttpTextGenerationClient

__all__ = [
    'BrokerClient',
    'TextGenerationClient',
    'HttpBrokerClient',
    'HttpTextGenerationClient',
]
