"""Content negotiation: accept markdown (with YAML frontmatter) or JSON."""

from __future__ import annotations

import json

import frontmatter
from fastapi import HTTPException, Request, Response
from pydantic import BaseModel, ValidationError


async def parse_body(request: Request) -> dict:
    """Parse request body as JSON or markdown with YAML frontmatter.

    In markdown bodies the text below the frontmatter becomes ``description``.
    """
    content_type = request.headers.get("content-type", "")
    raw = await request.body()
    text = raw.decode("utf-8").strip()

    if not text:
        return {}

    if "application/json" in content_type:
        return json.loads(text)

    # Some clients send JSON without a content-type
    if text.startswith("{") and "text/markdown" not in content_type:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            pass

    post = frontmatter.loads(text)
    result = dict(post.metadata)
    if post.content.strip():
        result["description"] = post.content.strip()
    return result


def wants_json(request: Request) -> bool:
    accept = request.headers.get("accept", "")
    return "application/json" in accept


def render_response(
    request: Request,
    data: dict | BaseModel,
    status_code: int = 200,
    headers: dict | None = None,
) -> Response:
    """Return JSON or markdown based on Accept header."""
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")

    if wants_json(request):
        return Response(
            content=json.dumps(data, indent=2),
            status_code=status_code,
            media_type="application/json",
            headers=headers,
        )

    # Copy before mutating so callers' dicts are not affected
    data = dict(data)

    body_key = None
    for k in ("description", "message", "error"):
        if isinstance(data.get(k), str):
            body_key = k
            break

    if body_key:
        body = data.pop(body_key)
        content = frontmatter.dumps(frontmatter.Post(body, **data)) if data else body
    else:
        content = frontmatter.dumps(frontmatter.Post("", **data))

    return Response(
        content=content,
        status_code=status_code,
        media_type="text/markdown",
        headers=headers,
    )


def render_task_result(
    request: Request,
    task: dict,
    status_code: int = 200,
) -> Response:
    """Render a task with X-Task-Id / X-Status headers."""
    headers = {
        "X-Task-Id": task["id"],
        "X-Status": task["status"],
    }
    return render_response(request, task, status_code=status_code, headers=headers)


async def parse_model(request: Request, model_cls: type[BaseModel]) -> BaseModel:
    """Parse the body and validate it, turning any failure into a 400."""
    try:
        body = await parse_body(request)
        if not isinstance(body, dict):
            raise TypeError("Body must be an object")
        return model_cls(**body)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or "body"
        raise HTTPException(status_code=400, detail=f"Invalid {field}: {first['msg']}") from e
    except (ValueError, TypeError) as e:
        raise HTTPException(status_code=400, detail="Invalid request body") from e
