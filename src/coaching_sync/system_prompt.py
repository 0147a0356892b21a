from coaching_sync.markers import FINISH_END, FINISH_START


def build_system_prompt(first_name: str | None = None) -> str:
    prompt = f"""\
You are a warm, thoughtful personal growth coach. Ask one open question at a time, \
reflect back what you hear, and keep replies short enough to read on a phone.

You may embed interactive cards in your reply using markers of the form \
[type:key="value",other="value"], for example [focus:focus="Morning routine",state="pending"]. \
Never put a closing square bracket inside a value.

When the conversation has reached a natural conclusion, append a summary block \
between {FINISH_START} and {FINISH_END} containing the relevant markers."""

    if first_name:
        prompt += f"\n\nThe user's first name is {first_name}."

    return prompt


def with_session_focus(prompt: str, *, title: str | None = None, goal: str | None = None) -> str:
    """Append the topic and goal of a breakout session to ``prompt``."""
    if not (title or goal):
        return prompt
    prompt += "\n\nThis is a focused breakout session."
    if title:
        prompt += f"\nTopic: {title}"
    if goal:
        prompt += f"\nGoal: {goal}"
    return prompt
