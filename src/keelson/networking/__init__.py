from keelson.networking.ingress import IngressRouter
from keelson.networking.service_registry import RegistrySnapshot, ServiceRegistry

__all__ = [
	"IngressRouter",
	"RegistrySnapshot",
	"ServiceRegistry",
]
