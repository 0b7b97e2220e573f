"""Agent prompt templates."""
from typing import Dict, List, Sequence, Tuple

from callbot.services.agent.base import GenerationRequest
from callbot.services.context.base import CallDirection, PromptBlocks


def _blocks_text(blocks: PromptBlocks) -> str:
    sections = [
        ("Company introduction", blocks.company_introduction),
        ("Greeting message", blocks.greeting_message),
        ("Eligibility criteria", blocks.eligibility_criteria),
        ("Restrictions", blocks.restrictions),
        ("Before ending the call", blocks.end_requirements),
    ]
    return "\n\n".join(f"{title}:\n{text.strip()}" for title, text in sections if text and text.strip())


def _context_text(context: Sequence[str]) -> str:
    if not context:
        return "No reference material was found for this question."
    return "\n---\n".join(snippet.strip() for snippet in context if snippet.strip())


def get_outbound_system_prompt(blocks: PromptBlocks, context: Sequence[str], language: str) -> str:
    """System prompt for calls the agent placed."""
    return f"""You are a friendly, professional phone agent who placed this call on behalf of the company below.
You are speaking out loud, so everything you say will be converted to speech.

{_blocks_text(blocks)}

Reference material:
{_context_text(context)}

When responding:
- Keep responses short and natural (1-3 sentences)
- Do not use lists, markdown, emojis or special formatting
- Only state facts that appear in the company details or the reference material
- If you do not know the answer, say so briefly and offer to help with something else
- Respect the eligibility criteria and restrictions at all times
- If the person is not interested, thank them politely and say goodbye
- Answer only in {language}"""


def get_inbound_system_prompt(blocks: PromptBlocks, context: Sequence[str], language: str) -> str:
    """System prompt for calls the agent answered."""
    return f"""You are a friendly, professional phone agent answering calls for the company below.
You are speaking out loud, so everything you say will be converted to speech.

{_blocks_text(blocks)}

Reference material:
{_context_text(context)}

When responding:
- Keep responses short and natural (1-3 sentences)
- Do not use lists, markdown, emojis or special formatting
- Answer the caller's questions using the company details and the reference material only
- If you do not know the answer, say so briefly and offer to help with something else
- Respect the eligibility criteria and restrictions at all times
- Answer only in {language}"""


OPENING_INSTRUCTIONS = {
    CallDirection.OUTBOUND: (
        "The person just picked up the phone. Greet them using the greeting message, "
        "briefly say why you are calling and ask whether they are interested."
    ),
    CallDirection.INBOUND: (
        "A caller just connected. Greet them using the greeting message "
        "and ask how you can help."
    ),
}


def build_messages(request: GenerationRequest) -> List[Dict[str, str]]:
    """Chat messages for one bot turn. An empty query means the opening turn."""
    if request.direction == CallDirection.OUTBOUND:
        system_prompt = get_outbound_system_prompt(
            request.prompt_blocks, request.context, request.language
        )
    else:
        system_prompt = get_inbound_system_prompt(
            request.prompt_blocks, request.context, request.language
        )

    messages = [{"role": "system", "content": system_prompt}]
    for query, response in request.history:
        if query:
            messages.append({"role": "user", "content": query})
        if response:
            messages.append({"role": "assistant", "content": response})

    query = request.query.strip()
    messages.append({
        "role": "user",
        "content": query or OPENING_INSTRUCTIONS[request.direction],
    })
    return messages


def _conversation_text(turns: Sequence[Tuple[str, str]]) -> str:
    lines = []
    for query, response in turns:
        lines.append(f"User: {query or '(call connected)'}")
        lines.append(f"Agent: {response}")
    return "\n".join(lines)


def get_follow_up_prompt(turns: Sequence[Tuple[str, str]]) -> str:
    """Ask whether the caller still wants to continue the call."""
    return f"""You review the latest exchanges of a phone call between a user and an AI agent.
Decide whether the user still wants to continue the conversation.

Return a JSON object with these keys:
- "FollowUpQueries": one of "YES", "NO", "NOT_CLEAR", "NOT_MENTIONED"
- "reason": one short sentence explaining the choice

Use "YES" when the user asked something or answered a question from the agent,
or when the agent's last message asks a question or offers further help.
Use "NO" only when the user's last message shows they want to stop and the
agent's last message does not ask them anything.
Use "NOT_CLEAR" or "NOT_MENTIONED" when the exchange does not say either way.

Conversation:
{_conversation_text(turns)}"""


def get_summary_prompt(turns: Sequence[Tuple[str, str]]) -> str:
    """Post-call sentiment and summary."""
    return f"""You analyze a finished phone call between a user and an AI agent.

Return a JSON object with these keys:
- "Sentiment": one of "Positive", "Neutral", "Negative"
- "PotentialCustomer": "YES" or "NO"
- "Summary": one or two sentences describing the call. Include any personal details
  the user gave (name, phone number, reason for calling). If the agent could not
  answer some questions, list them.

Conversation:
{_conversation_text(turns)}"""


SILENCE_SYSTEM_PROMPT = """You are a phone agent. The user went quiet in the middle of the call.
Using their last message and your previous reply, write one short sentence that checks
whether they are still on the line and offers further help. Do not greet them again."""


def get_silence_messages(last_query: str, last_response: str) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": SILENCE_SYSTEM_PROMPT},
        {"role": "user", "content": f"User's last message: {last_query or '(none)'}"},
        {"role": "user", "content": f"Your previous reply: {last_response or '(none)'}"},
    ]
