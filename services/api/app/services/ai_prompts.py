"""Prompt templates and JSON schemas for follow-up draft generation."""

FOLLOW_UP_SYSTEM_PROMPT = """You are an expert email follow-up specialist. Your task is to generate
effective, contextual follow-up emails that get responses while maintaining professional relationships.

LANGUAGE: Write the email in {language}. Match the language and cultural context.

FOLLOW-UP CONTEXT:
- Original email sent {days_since_original} days ago
- Priority level: {priority}
- Follow-up reason: {follow_up_reason}
- Desired tone: {tone}
- Desired approach: {approach}

TONE GUIDELINES:
{tone_guidelines}

APPROACH GUIDELINES:
{approach_guidelines}

FOLLOW-UP BEST PRACTICES:
1. Reference the original email context naturally
2. Provide value or new information when possible
3. Make it easy for the recipient to respond
4. Keep it concise but complete
5. Use appropriate urgency based on priority
6. Avoid sounding pushy or desperate
{custom_instructions}
Respond ONLY in JSON:
{{
  "subject": "string",
  "body": "string",
  "tone": "string",
  "approach": "string",
  "confidence": 0.0 to 1.0,
  "reasoning": "string"
}}"""

FOLLOW_UP_USER_PROMPT = """Generate a follow-up email for this context:

ORIGINAL EMAIL:
Subject: {subject}
Recipients: {recipients}
Sent: {sent_at}

Content:
{content}

FOLLOW-UP DETAILS:
- Days since original: {days_since_original}
- Reason for follow-up: {follow_up_reason}
- Priority: {priority}

Generate an effective follow-up email that addresses the situation appropriately."""

TONE_GUIDELINES = {
    "professional": "Use formal, business-appropriate language. Be respectful and courteous.",
    "friendly": "Use warm, approachable language while maintaining professionalism.",
    "urgent": "Convey importance without being aggressive. Use time-sensitive language.",
    "casual": "Use relaxed, conversational language appropriate for the relationship.",
}
DEFAULT_TONE_GUIDELINE = "Use professional, courteous language."

APPROACH_GUIDELINES = {
    "gentle": "Soft reminder approach. Acknowledge they may be busy. No pressure.",
    "direct": "Clear, straightforward approach. State what you need explicitly.",
    "value-add": "Include additional value, insights, or helpful information.",
    "alternative": "Offer alternative solutions or next steps. Show flexibility.",
}
DEFAULT_APPROACH_GUIDELINE = "Use a balanced, professional approach."

# Lower temperature for tones that need focus, higher for conversational ones
TONE_TEMPERATURE = {
    "urgent": 0.3,
    "professional": 0.4,
    "friendly": 0.7,
    "casual": 0.8,
}
DEFAULT_TEMPERATURE = 0.5

LENGTH_MAX_TOKENS = {
    "short": 300,
    "medium": 600,
    "long": 1000,
}
DEFAULT_MAX_TOKENS = 600

# JSON schema for output validation
FOLLOW_UP_DRAFT_SCHEMA = {
    "type": "object",
    "required": ["subject", "body"],
    "properties": {
        "subject": {"type": "string", "minLength": 1},
        "body": {"type": "string", "minLength": 1},
        "tone": {"type": "string"},
        "approach": {"type": "string"},
        "confidence": {"type": "number", "minimum": 0.0, "maximum": 1.0},
        "reasoning": {"type": "string"},
        "alternatives": {"type": "array"},
    },
}
