"""
Generation service: the single entry point processors use for model calls.

Text, JSON and images go to Gemini; videos go to Kie.ai (Veo). Processors
only see this facade, so tests swap in a fake with the same methods.
"""

from . import gemini
from . import kie


class GenerationService:

    def generate_text(self, prompt: str, system_prompt: str | None = None) -> str:
        return gemini.generate_text(prompt, system_prompt)

    def generate_structured(self, prompt: str, schema: dict, system_prompt: str | None = None) -> dict:
        return gemini.generate_structured(prompt, schema, system_prompt)

    def generate_image(self, prompt: str, width: int = 1024, height: int = 1024) -> bytes:
        return gemini.generate_image(prompt, width=width, height=height)

    def edit_image(self, image_bytes: bytes, edit_prompt: str) -> bytes:
        return gemini.edit_image(image_bytes, edit_prompt)

    def generate_video(self, prompt: str, image_url: str | None = None, options: dict | None = None) -> str:
        """Returns the provider URL of the finished video."""
        return kie.generate_video(prompt, image_url, options)

    def download(self, url: str) -> bytes:
        return kie.download(url)

    @staticmethod
    def configured() -> dict:
        return {
            "gemini": bool(gemini.GEMINI_API_KEY),
            "kie": bool(kie.KIE_API_KEY),
        }
