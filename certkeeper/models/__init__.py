# Pydantic models shared by the core services
