# AI Counsellor Prompts
# =====================

import json

STAGE_NAMES = {
    1: "ONBOARDING",
    2: "DISCOVERY",
    3: "SHORTLIST",
    4: "APPLICATION",
}

SYSTEM_PROMPT = """
You are AI Counsellor, an expert study-abroad advisor. Be strict, helpful and realistic.
Use the student's profile and state below to give personalized advice.

## Student State
Current stage: {stage} ({stage_name}) - stages are 1=Profile, 2=Discovery, 3=Shortlist, 4=Locked/Application
Profile: {profile}
Shortlist: {shortlist}
Locked university: {locked}
Tasks: {tasks}

## Actions
You can change the student's state with these functions:
- shortlist_university: add a university to the shortlist (category Dream, Target or Safe)
- add_task: add a new to-do item
- set_task_status: mark an existing task completed or pending, found by a keyword from its title
- lock_university: commit to one shortlisted university for applications
- update_profile: change one profile field
- get_recommendations: produce Dream/Target/Safe university suggestions

## Rules
1. Call a function whenever the student asks you to change something. Never claim a change you did not make.
2. Use the native function-calling interface only. Never write function syntax, tags or JSON in your reply text.
3. Only lock a university that is already on the shortlist.
4. If the budget is low, warn about expensive cities and suggest affordable countries.
5. If GPA is low, lean towards Safe universities.
6. Keep replies concise and specific.
"""

TEXT_ONLY_CORRECTION = """
Your previous attempt to call a function was malformed and was rejected.
Function calling is unavailable for this reply. If an action is still needed, write exactly one line per
action in the form  action_name {{"argument": "value"}}  using only these names: {names}.
Then answer the student in plain language.
"""

FOLLOWUP_INSTRUCTION = (
    "The actions above have been executed and their results are shown. "
    "Summarize for the student, in one or two friendly sentences, what was done and anything that failed. "
    "Do not call any functions."
)

# Used when the model ran actions but produced no text and the follow-up failed
FALLBACK_REPLY = "Done! I've updated your plan. You can see the changes in your dashboard."

# Used when the model produced neither text nor actions
EMPTY_REPLY = "I'm not sure I understood that. Could you rephrase your question?"

# Used when every completion attempt failed
SERVICE_UNAVAILABLE_REPLY = "I'm having trouble reaching the advisor service right now. Please try again in a moment."

RECOMMENDATION_PROMPT = """
Student profile: {profile}

Generate a JSON object with 3 arrays of universities:
1. "dream" (high ranking, hard to get in)
2. "target" (good fit, 50-70% chance)
3. "safe" (high acceptance chance)

Each university object must have: {{"name": "University Name", "country": "Country", "location": "City",
"acceptance_chance": "Low|Medium|High", "why_fits": "One sentence"}}

OUTPUT JSON ONLY.
"""

TIMELINE_PROMPT = """
Generate an application timeline for:
- University: {university}, {country}
- Target intake: {intake}
- Months until intake: {months}
- Current date: {today}

Create a realistic timeline with 5-7 key milestones from now until intake.
Phases should include: Test Prep, Document Prep, Application Submission, Visa Process, Pre-Departure.
Mark a phase "urgent" if its deadline is less than 1 month away, "current" if within 1-3 months,
"upcoming" if 3+ months away.

Return a JSON object {{"timeline": [...]}} where each item is:
{{"phase": "Phase name", "deadline": "YYYY-MM-DD", "tasks": ["Task 1", "Task 2"],
"status": "upcoming|current|urgent", "description": "What to focus on in this phase"}}

OUTPUT JSON ONLY.
"""


def _compact(value) -> str:
    return json.dumps(value, default=str, ensure_ascii=False)


def get_system_prompt(context) -> str:
    """System prompt for one chat turn, filled from the turn context."""
    shortlist = [
        {"name": s["uni_name"], "country": s.get("country"), "category": s.get("category"), "locked": s.get("is_locked")}
        for s in context.shortlist
    ]
    tasks = [{"title": t["title"], "status": t["status"]} for t in context.tasks]
    locked = context.locked["uni_name"] if context.locked else "none"

    return SYSTEM_PROMPT.format(
        stage=context.stage,
        stage_name=STAGE_NAMES.get(context.stage, "UNKNOWN"),
        profile=_compact(context.profile or {}),
        shortlist=_compact(shortlist) if shortlist else "empty",
        locked=locked,
        tasks=_compact(tasks) if tasks else "none",
    ).strip()


def get_text_only_correction(action_names) -> str:
    return TEXT_ONLY_CORRECTION.format(names=", ".join(action_names)).strip()


def get_recommendation_prompt(profile: dict) -> str:
    return RECOMMENDATION_PROMPT.format(profile=_compact(profile or {})).strip()


def get_timeline_prompt(university: dict, profile: dict, today, months) -> str:
    season = profile.get("target_intake_season") or ""
    year = profile.get("target_intake_year") or ""
    return TIMELINE_PROMPT.format(
        university=university.get("uni_name"),
        country=university.get("country") or "unknown country",
        intake=f"{season} {year}".strip() or "not decided",
        months=months if months is not None else "unknown",
        today=today.isoformat(),
    ).strip()
