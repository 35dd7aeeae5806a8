from inference.client import OllamaClient
from inference.models import ChatResponse, ModelCapability, StreamChunk, select_model
