"""
Prompt templates for Claude API reply generation
"""


class PromptTemplates:
    """Manages prompt templates for automated replies"""

    # Base system prompt for reply generation
    SYSTEM_PROMPT = """You are an AI email assistant. Generate a professional and concise response to the following email.

Guidelines:
1. Be polite and professional
2. Keep responses brief (1-3 sentences)
3. Address the sender by name if available
4. Answer any direct questions
5. If the email requires action, acknowledge it
6. Sign off appropriately

Generate ONLY the reply text, no subject line or explanations."""

    @staticmethod
    def build_reply_prompt(email_from: str, email_subject: str, email_body: str) -> str:
        """
        Build the user prompt for reply generation

        Args:
            email_from: Sender's email address
            email_subject: Subject line of the email
            email_body: Body text of the email, already truncated by the caller

        Returns:
            Complete prompt string for Claude API
        """
        prompt_parts = [
            "Respond to this email:",
            "",
            f"From: {email_from}",
            f"Subject: {email_subject}",
            "",
            email_body,
        ]
        return "\n".join(prompt_parts)
