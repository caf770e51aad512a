"""User-facing assistant messages emitted without calling the AI service."""
from __future__ import annotations

from .quota import REASON_PACKAGE_RESTRICTION, REASON_PAPER_LIMIT, REASON_TOKEN_LIMIT, AccessDecision

GENERIC_ERROR_MESSAGE = "Sorry, I encountered an error. Please try again."
BUSY_MESSAGE = "Still working on your previous message. Please wait for the answer before sending another one."
DOCUMENT_UNAVAILABLE_MESSAGE = (
    "Sorry, I couldn't load this exam paper right now. Please try again in a moment."
)

FIRST_QUESTION_CONFIRM_MESSAGE = """Hey there! 👋

I'd love to help you with that! Since this is your first question, are you asking about **Question 1**?

If yes, just type "yes" or "Question 1".
If you meant a different question, just tell me the question number like:
- "Question 2"
- "Q5"
- "No, question 3"

Let me know! 😊"""

WELCOME_BACK_MESSAGE = """Welcome back! 👋

I see you're continuing your work on this exam paper. Feel free to ask about any question you'd like to work on today!

Just say something like:
- "Question 3"
- "Help with Q7"
- "Let's do question 5"

Ready when you are!"""

CLARIFY_HELP_MESSAGE = """Hey! I can see you need help. To give you the best explanation, could you tell me which specific question you're working on?

Just say something like:
- "Question 2"
- "Help with Q5b"
- "I'm stuck on question 3"

Once I know which question, I can walk you through it step by step! 😊"""

CLARIFY_EXPLAIN_MESSAGE = """I'd be happy to explain! But first, which question are you asking about?

You can say:
- "Question 4"
- "Q2a"
- "Explain question 7"

This helps me focus on exactly what you need! 📚"""

CLARIFY_SOLVE_MESSAGE = """Sure, I can help you solve that! Which question number are you working on?

Just tell me like:
- "Question 3"
- "Solve Q6"
- "What's the answer to question 1?"

Let me know and I'll guide you through it! ✨"""

CLARIFY_DEFAULT_MESSAGE = """Hey! I'd love to help you with that. Could you please specify which question you're asking about?

For example, you can say:
- "Question 2"
- "Q3b"
- "Can you help with question 5?"

This helps me give you the most accurate and focused help! 😊"""


def denial_message(decision: AccessDecision) -> str:
    if decision.reason == REASON_PACKAGE_RESTRICTION:
        return """🔒 **Chat Access Restricted**

This exam paper is not included in your current subscription package.

**To use AI chat with this paper:**
- Upgrade to **Professional Package** - Chat with all papers
- Or modify your **Student Package** to include this grade and subject

You can still view and download this exam paper!"""

    if decision.reason == REASON_TOKEN_LIMIT:
        limit = decision.token_limit or 0
        return f"""🔒 **Token Limit Reached**

You've used all {limit:,} tokens for this month.

**To continue using AI chat:**
- Upgrade to **Student Package** - Get more tokens every month
- Upgrade to **Professional Package** - Unlimited tokens

Your tokens will reset at the start of next month."""

    if decision.reason == REASON_PAPER_LIMIT:
        papers_limit = decision.papers_limit or 0
        tokens_left = decision.remaining.get("tokens") or 0
        return f"""🔒 **Paper Limit Reached**

You can view this exam paper, but you've used AI chat on {papers_limit} papers already (your free tier limit).

You still have **{tokens_left:,} tokens** remaining, but they can only be used on the {papers_limit} papers you've already chatted with.

**To unlock AI chat for more papers:**
- Upgrade to **Student Package** - Chat with unlimited papers
- Upgrade to **Professional Package** - Unlimited everything

You can still view and download this exam paper!"""

    return GENERIC_ERROR_MESSAGE
