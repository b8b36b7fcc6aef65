"""
Action registry.

The closed set of actions the model may request. Each entry declares its
arguments and a handler `(ActionContext, args) -> ActionOutcome`; adding an
action is a registration, not a new branch in the orchestrator.
"""

from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Optional, Tuple
import inspect

from sqlalchemy.orm import Session

import crud
from ai_context import TurnContext
from errors import ExternalServiceError, NotFoundError
from models import PROFILE_FIELDS, CategoryEnum, Priority, Stage, TaskStatus
from normalizer import ArgSpec, normalize_numeric, normalize_profile_value


@dataclass
class ActionOutcome:
    action: str
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ActionContext:
    user_id: int
    turn: TurnContext
    db: Optional[Session] = None
    recommender: Any = None


@dataclass(frozen=True)
class ActionDefinition:
    name: str
    description: str
    handler: Callable
    args: Tuple[ArgSpec, ...] = ()
    label: str = ""

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.handler)

    def to_function_declaration(self) -> Dict[str, Any]:
        """Function declaration in the JSON-schema shape the completion service expects."""
        properties: Dict[str, Any] = {}
        for spec in self.args:
            if spec.type == "list":
                prop: Dict[str, Any] = {"type": "array", "items": {"type": "string"}}
            elif spec.type in ("number", "boolean"):
                prop = {"type": spec.type}
            else:
                prop = {"type": "string"}
            if spec.enum:
                prop["enum"] = list(spec.enum)
            if spec.description:
                prop["description"] = spec.description
            properties[spec.name] = prop

        parameters: Dict[str, Any] = {"type": "object", "properties": properties}
        required = [spec.name for spec in self.args if spec.required]
        if required:
            parameters["required"] = required
        return {"name": self.name, "description": self.description, "parameters": parameters}


class ActionRegistry:
    def __init__(self):
        self._actions: Dict[str, ActionDefinition] = {}

    def register(self, definition: ActionDefinition) -> ActionDefinition:
        if definition.name in self._actions:
            raise ValueError(f"Action already registered: {definition.name}")
        self._actions[definition.name] = definition
        return definition

    def action(self, name: str, description: str, args: Tuple[ArgSpec, ...] = (), label: str = ""):
        """Decorator form of `register`."""
        def decorator(handler: Callable) -> Callable:
            self.register(ActionDefinition(name=name, description=description, handler=handler, args=args, label=label or name))
            return handler
        return decorator

    def get(self, name: str) -> Optional[ActionDefinition]:
        return self._actions.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._actions

    @property
    def names(self) -> List[str]:
        return list(self._actions)

    def function_declarations(self) -> List[Dict[str, Any]]:
        return [definition.to_function_declaration() for definition in self._actions.values()]


registry = ActionRegistry()

# ========================================
# HANDLERS
# ========================================

@registry.action(
    name="shortlist_university",
    description="Add a university to the student's shortlist. Adding a university that is already listed does nothing.",
    label="shortlist that university",
    args=(
        ArgSpec("uni_name", required=True, description="Full university name"),
        ArgSpec("country", description="Country of the university"),
        ArgSpec("category", enum=tuple(c.value for c in CategoryEnum), description="Dream, Target or Safe"),
        ArgSpec("fit_score", type="number", description="Fit score from 0 to 100"),
        ArgSpec("why_fits", description="Why this university fits the student"),
        ArgSpec("key_risks", type="list", description="Main admission risks"),
        ArgSpec("acceptance_chance", enum=("Low", "Medium", "High"), description="Qualitative acceptance chance"),
    ),
)
def shortlist_university(ctx: ActionContext, args: Dict) -> ActionOutcome:
    fit_score = args.get("fit_score")
    if not isinstance(fit_score, (int, float)):
        fit_score = None

    entry, created = crud.add_to_shortlist(
        ctx.db,
        ctx.user_id,
        args["uni_name"],
        country=args.get("country"),
        category=args.get("category"),
        fit_score=int(round(fit_score)) if fit_score is not None else None,
        why_fits=args.get("why_fits"),
        key_risks=args.get("key_risks"),
        acceptance_chance=args.get("acceptance_chance"),
    )
    if not created:
        return ActionOutcome("shortlist_university", True, f"{entry.uni_name} is already in your shortlist.", entry.to_dict())

    ctx.turn.shortlist.append(entry.to_dict())
    ctx.turn.stage = max(ctx.turn.stage, int(Stage.SHORTLIST))
    return ActionOutcome(
        "shortlist_university",
        True,
        f"Added {entry.uni_name} to your shortlist as a {entry.category} university.",
        entry.to_dict(),
    )


@registry.action(
    name="add_task",
    description="Create a new task on the student's to-do list.",
    label="add that task",
    args=(
        ArgSpec("title", required=True, description="Short task title"),
        ArgSpec("description", description="Task details"),
        ArgSpec("category", description="e.g. exams, essays, documents, visa"),
        ArgSpec("priority", enum=tuple(p.value for p in Priority), description="high, medium or low"),
        ArgSpec("due_date", description="Due date as YYYY-MM-DD"),
    ),
)
def add_task(ctx: ActionContext, args: Dict) -> ActionOutcome:
    locked = ctx.turn.locked
    task = crud.create_task(
        ctx.db,
        ctx.user_id,
        args["title"],
        description=args.get("description"),
        category=args.get("category"),
        priority=args.get("priority"),
        due_date=args.get("due_date"),
        ai_generated=True,
        university_id=locked["id"] if locked else None,
    )
    ctx.turn.tasks.append(task.to_dict())
    return ActionOutcome("add_task", True, f"Added task: {task.title}", task.to_dict())


@registry.action(
    name="set_task_status",
    description="Mark an existing task as completed or pending. The task is found by a keyword from its title.",
    label="update that task",
    args=(
        ArgSpec("keyword", required=True, description="Word or phrase from the task title"),
        ArgSpec(
            "status",
            enum=tuple(s.value for s in TaskStatus),
            aliases={"done": "completed", "complete": "completed", "finished": "completed",
                     "todo": "pending", "incomplete": "pending", "not-started": "pending", "not started": "pending"},
            description="completed or pending (default completed)",
        ),
    ),
)
def set_task_status(ctx: ActionContext, args: Dict) -> ActionOutcome:
    keyword = args["keyword"]
    status = args.get("status") or TaskStatus.COMPLETED.value

    needle = keyword.lower()
    matches = [task for task in crud.get_all_tasks(ctx.db, ctx.user_id) if needle in (task.title or "").lower()]
    if not matches:
        raise NotFoundError(f"I couldn't find a task matching '{keyword}'.")

    task = crud.set_task_status(ctx.db, ctx.user_id, matches[0].id, status)
    ctx.turn.tasks = [task.to_dict() if t["id"] == task.id else t for t in ctx.turn.tasks]

    message = f"Marked '{task.title}' as {status}."
    if len(matches) > 1:
        message += f" {len(matches)} tasks matched '{keyword}'; I updated the first one."
    return ActionOutcome("set_task_status", True, message, task.to_dict())


@registry.action(
    name="lock_university",
    description="Commit to one shortlisted university for applications. Unlocks any previously locked university.",
    label="lock that university",
    args=(
        ArgSpec("uni_name", required=True, description="Name (or part of the name) of a shortlisted university"),
    ),
)
def lock_university(ctx: ActionContext, args: Dict) -> ActionOutcome:
    keyword = args["uni_name"].lower()
    entries = crud.get_user_shortlists(ctx.db, ctx.user_id)
    target = next(
        (e for e in entries if keyword in e.uni_name.lower() or e.uni_name.lower() in keyword),
        None,
    )
    if not target:
        raise NotFoundError(f"'{args['uni_name']}' is not in your shortlist. Shortlist it first, then lock it.")

    entry = crud.lock_university(ctx.db, ctx.user_id, target.id)

    ctx.turn.shortlist = [e.to_dict() for e in crud.get_user_shortlists(ctx.db, ctx.user_id)]
    ctx.turn.tasks = [t.to_dict() for t in crud.get_all_tasks(ctx.db, ctx.user_id)]
    ctx.turn.stage = int(Stage.LOCKED)
    return ActionOutcome(
        "lock_university",
        True,
        f"Locked {entry.uni_name}. Your application tasks are ready.",
        entry.to_dict(),
    )


@registry.action(
    name="update_profile",
    description="Update one field of the student's profile. To set GPA on a different scale, pass gpa_scale with it.",
    label="update your profile",
    args=(
        ArgSpec("field", required=True, enum=PROFILE_FIELDS, description="Profile field to change"),
        ArgSpec("value", type="any", required=True, description="New value; lists are comma-separated"),
        ArgSpec("gpa_scale", type="number", description="Scale of the GPA value, e.g. 4 or 10"),
    ),
)
def update_profile(ctx: ActionContext, args: Dict) -> ActionOutcome:
    field_name = args["field"]
    updates = {field_name: normalize_profile_value(field_name, args["value"])}
    if field_name == "gpa" and args.get("gpa_scale") is not None:
        # Stored as given; converting between scales is the caller's job
        updates["gpa_scale"] = normalize_numeric(args["gpa_scale"])

    profile = crud.update_profile_fields(ctx.db, ctx.user_id, updates)
    ctx.turn.profile = profile

    shown = ", ".join(f"{k.replace('_', ' ')} = {_display(v)}" for k, v in updates.items())
    return ActionOutcome("update_profile", True, f"Updated your profile: {shown}.", {"profile": profile})


@registry.action(
    name="get_recommendations",
    description="Generate Dream/Target/Safe university recommendations for the student.",
    label="get recommendations",
    args=(
        ArgSpec("refresh", type="boolean", description="Ignore cached recommendations"),
    ),
)
async def get_recommendations(ctx: ActionContext, args: Dict) -> ActionOutcome:
    if ctx.recommender is None:
        raise ExternalServiceError("No recommendation service configured")

    result = await ctx.recommender.get_recommendations(ctx.user_id, refresh=bool(args.get("refresh")))
    counts = {category: len(result.get(category) or []) for category in ("dream", "target", "safe")}
    if not any(counts.values()):
        return ActionOutcome(
            "get_recommendations",
            False,
            "I need your GPA or preferred countries before I can recommend universities.",
            result,
        )
    return ActionOutcome(
        "get_recommendations",
        True,
        f"Found {counts['dream']} dream, {counts['target']} target and {counts['safe']} safe universities.",
        result,
    )


def _display(value: Any) -> str:
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    return str(value)
