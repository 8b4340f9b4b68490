import json
import traceback
from typing import Dict, Any, Optional, List
from aiohttp import web
from aiohttp.web_request import Request
from aiohttp.web_response import Response
import logging

from blogcore.errors import APIError, ValidationError

logger = logging.getLogger(__name__)


@web.middleware
async def error_middleware(request: Request, handler):
    """Global error handling middleware"""
    try:
        return await handler(request)
    except APIError as e:
        if e.status_code >= 500:
            logger.error(f"API Error on {request.method} {request.path}: {e.message} "
                         f"(Status: {e.status_code}) {e.details}")
        else:
            logger.warning(f"API Error on {request.method} {request.path}: {e.message} "
                           f"(Status: {e.status_code})")
        return json_response({
            'error': e.message,
            'details': e.details
        }, status=e.status_code)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.error(f"Unexpected error: {str(e)}\n{traceback.format_exc()}")
        return json_response({
            'error': 'Internal server error'
        }, status=500)


def json_response(data: Any, status: int = 200, headers: Optional[Dict[str, str]] = None) -> Response:
    """Create a JSON response"""
    return web.json_response(
        data,
        status=status,
        headers=headers,
        dumps=lambda obj: json.dumps(obj, indent=2, default=str)
    )


async def get_json_data(request: Request) -> Dict[str, Any]:
    """Parse the JSON object body of a request"""
    if not request.body_exists:
        raise ValidationError("Request must contain valid JSON")
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"Invalid JSON in request: {e}")
        raise ValidationError("Invalid JSON in request body")
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def get_query_params(request: Request) -> Dict[str, str]:
    """Get query parameters from request"""
    return dict(request.query)


def get_path_params(request: Request) -> Dict[str, str]:
    """Get path parameters from request"""
    return dict(request.match_info)


def require_fields(data: Dict[str, Any], fields: List[str]) -> None:
    """Validate that required fields are present in data"""
    missing = [field for field in fields if field not in data or data[field] is None]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def validate_field_types(data: Dict[str, Any], field_types: Dict[str, type]) -> None:
    """Validate field types in data"""
    for field, expected_type in field_types.items():
        if field in data and data[field] is not None and not isinstance(data[field], expected_type):
            raise ValidationError(f"Field '{field}' must be of type {expected_type.__name__}")
