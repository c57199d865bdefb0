"""
Goal API routes

Endpoints:
- POST /goals              Submit a goal
- GET  /goals              List goals (submission order)
- GET  /goals/<id>         Goal status with its steps
- POST /goals/<id>/stop    Stop a goal (idempotent)
- GET  /tools              List registered tools
"""
from flask import Blueprint, current_app, request, jsonify
from pydantic import ValidationError as PydanticValidationError

from goalengine.db import models

bp = Blueprint("goals", __name__)


def get_runtime():
    return current_app.extensions["goalengine"]


def validation_response(e: PydanticValidationError):
    return jsonify(models.ErrorResponse(
        detail="Invalid request body",
        error_code="validation_error",
        context={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
    ).model_dump()), 400


def goal_to_response(goal) -> dict:
    return models.GoalResponse(**goal.to_dict()).model_dump()


@bp.route("/goals", methods=["POST"])
async def submit_goal():
    """
    Submit a goal.

    Body: {"description": "...", "priority": "medium"}
    Returns: the goal as recorded (status pending)
    """
    data = request.get_json(silent=True) or {}
    try:
        goal_data = models.GoalCreate.model_validate(data)
    except PydanticValidationError as e:
        return validation_response(e)

    runtime = get_runtime()
    orchestrator = runtime.engine.orchestrator
    goal_id = await runtime.call_async(orchestrator.submit(goal_data.description, goal_data.priority.value))
    goal = await runtime.call_async(_status(orchestrator, goal_id))
    return jsonify(goal_to_response(goal)), 201


@bp.route("/goals", methods=["GET"])
async def list_goals():
    runtime = get_runtime()
    goals = await runtime.call_async(_list(runtime.engine.orchestrator))
    return jsonify([goal_to_response(goal) for goal in goals])


@bp.route("/goals/<goal_id>", methods=["GET"])
async def get_goal(goal_id):
    runtime = get_runtime()
    orchestrator = runtime.engine.orchestrator
    goal = await runtime.call_async(_status(orchestrator, goal_id))
    steps = await runtime.call_async(_steps(orchestrator, goal_id))
    detail = models.GoalDetailResponse(
        **goal.to_dict(),
        steps=[models.StepResponse(**step.to_dict()) for step in steps],
    )
    return jsonify(detail.model_dump())


@bp.route("/goals/<goal_id>/stop", methods=["POST"])
async def stop_goal(goal_id):
    runtime = get_runtime()
    goal = await runtime.call_async(runtime.engine.orchestrator.stop(goal_id))
    return jsonify(goal_to_response(goal))


@bp.route("/tools", methods=["GET"])
async def list_tools():
    """List all registered tools"""
    registry = get_runtime().engine.tools
    return jsonify({
        "tools": registry.list_tools(),
        "count": registry.count(),
    })


# Orchestrator reads must run on the engine loop too

async def _status(orchestrator, goal_id):
    return orchestrator.status(goal_id)


async def _list(orchestrator):
    return orchestrator.list()


async def _steps(orchestrator, goal_id):
    return orchestrator.steps(goal_id)
