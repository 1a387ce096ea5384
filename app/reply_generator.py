"""
Claude API reply generation using the Anthropic SDK
"""
import logging
from typing import Optional

from anthropic import AsyncAnthropic, APIError, APIConnectionError, RateLimitError

from .prompt_templates import PromptTemplates

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "Thank you for your email. I've received it and will get back to you soon."


class ReplyGenerator:
    """Generates reply text with Claude; never raises to its caller"""

    # Model configuration
    DEFAULT_MODEL = "claude-3-5-haiku-latest"
    MAX_TOKENS = 150  # Replies are 1-3 sentences
    TEMPERATURE = 0.7
    MAX_INPUT_CHARS = 2000

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[AsyncAnthropic] = None
    ):
        """
        Initialize the reply generator

        Args:
            api_key: Anthropic API key; without one every call returns the fallback
            model: Claude model name (defaults to DEFAULT_MODEL)
            client: Pre-built async client, mainly for tests
        """
        self.model = model or self.DEFAULT_MODEL
        self.prompt_templates = PromptTemplates()
        if client is not None:
            self.client = client
        elif api_key:
            self.client = AsyncAnthropic(api_key=api_key)
        else:
            self.client = None

    @property
    def is_configured(self) -> bool:
        return self.client is not None

    async def generate(self, sender: str, subject: str, text: str) -> str:
        """
        Generate a reply for an inbound email

        Args:
            sender: Sender's email address
            subject: Subject line of the email
            text: Plain-text body; only the first 2000 characters are submitted

        Returns:
            Reply text, or FALLBACK_REPLY if generation failed for any reason
        """
        try:
            if self.client is None:
                raise RuntimeError("Anthropic API key not configured")

            prompt = self.prompt_templates.build_reply_prompt(
                email_from=sender,
                email_subject=subject,
                email_body=(text or "")[:self.MAX_INPUT_CHARS]
            )

            logger.info(f"Generating reply for email from {sender}")

            message = await self.client.messages.create(
                model=self.model,
                max_tokens=self.MAX_TOKENS,
                temperature=self.TEMPERATURE,
                system=self.prompt_templates.SYSTEM_PROMPT,
                messages=[
                    {"role": "user", "content": prompt}
                ]
            )

            reply_text = self._extract_text(message)
            if not reply_text:
                raise ValueError("No response text from Claude")

            logger.info(f"Generated reply: {len(reply_text)} chars")
            return reply_text

        except RateLimitError as e:
            logger.error(f"Rate limit exceeded, using fallback reply: {e}")
        except APIConnectionError as e:
            logger.error(f"Connection error to Claude API, using fallback reply: {e}")
        except APIError as e:
            logger.error(f"Claude API error, using fallback reply: {e}")
        except Exception as e:
            logger.error(f"AI response generation failed, using fallback reply: {e}")

        return FALLBACK_REPLY

    @staticmethod
    def _extract_text(message) -> str:
        content = getattr(message, "content", None) or []
        parts = [getattr(block, "text", "") or "" for block in content]
        return "".join(parts).strip()
