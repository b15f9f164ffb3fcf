"""Web search providers used for supplier discovery."""

from .base import BaseConnector
from .google_cse import GoogleSearchConnector
from .serpapi import SerpApiConnector
from .yandex import YandexSearchConnector

__all__ = ["BaseConnector", "GoogleSearchConnector", "SerpApiConnector", "YandexSearchConnector"]
