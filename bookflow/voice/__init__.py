from bookflow.voice.commands import CommandAction, VoiceCommand, parse_transcript

__all__ = ["CommandAction", "VoiceCommand", "parse_transcript"]
