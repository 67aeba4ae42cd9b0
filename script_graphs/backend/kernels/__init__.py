from .elementwise import create_elementwise_script

__all__ = ["create_elementwise_script"]
