from .discord import DiscordClient, DiscordError
