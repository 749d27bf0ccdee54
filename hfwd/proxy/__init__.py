"""Request forwarding: path rewriting, header policy and the ASGI handler."""
