from services.studio.app.dispatch import AgentProfile

BASE_SYSTEM_MESSAGE = """You are a game designer and developer building browser games with Phaser inside a \
Next.js project. The project lives in a sandboxed dev server that you can only reach through your file tools.

Work in small, verifiable steps:
- Read the files you are about to change before editing them.
- Keep the game playable after every change and prefer simple shapes over missing assets.
- Use update_todo_list to plan multi-step work and keep it current.
- When you finish, summarize what changed and what the player can do now.
"""


def build_system_message(profile: AgentProfile) -> str:
    sections = [BASE_SYSTEM_MESSAGE]

    focus = []
    if profile.game_type:
        focus.append(f"Game type: {profile.game_type}")
    if profile.game_loop:
        focus.append(f"Core loop: {profile.game_loop}")
    if profile.focus_mechanics:
        focus.append("Mechanics to emphasize: " + ", ".join(profile.focus_mechanics))
    if focus:
        sections.append("## Focus\n" + "\n".join(focus))

    guidance = []
    if profile.include_implementation_patterns:
        guidance.append("- Structure scenes, input and game state the way Phaser examples do.")
    if profile.include_engagement_patterns:
        guidance.append("- Add feedback loops players feel: score popups, screen shake, sound cues.")
    if profile.include_prototyping_tips:
        guidance.append("- Get a rough playable version on screen first, then polish.")
    if guidance:
        sections.append("## Guidance\n" + "\n".join(guidance))

    if profile.custom_instructions:
        sections.append("## Instructions\n" + profile.custom_instructions)

    return "\n\n".join(sections)
