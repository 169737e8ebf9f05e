"""Domain services: session registry, presence, fan-out, chat and identity."""
