import logging
from functools import wraps

from flask import jsonify, request

logger = logging.getLogger(__name__)

_TYPES = {
    'str': str,
    'int': int,
    'bool': bool,
    'dict': dict,
    'list': list,
}


def validate_json_input(schema):
    """Check required fields and simple types of the JSON body.

    ``schema`` maps field -> {'required': bool, 'type': 'str'|'int'|'bool'|'dict'|'list'}.
    The parsed body is exposed as ``request.validated_data``.
    """
    def decorator(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            data = request.get_json(silent=True)
            if data is None:
                data = {}
            if not isinstance(data, dict):
                return jsonify({'error': 'Request body must be a JSON object'}), 400

            errors = {}
            for field, rules in schema.items():
                value = data.get(field)

                if value is None:
                    if rules.get('required'):
                        errors[field] = 'This field is required'
                    continue

                expected = _TYPES.get(rules.get('type'))
                if expected is int and isinstance(value, bool):
                    errors[field] = 'Must be an integer'
                elif expected is not None and not isinstance(value, expected):
                    errors[field] = f"Must be of type {rules['type']}"
                elif rules.get('type') == 'str' and rules.get('required') and not value.strip():
                    errors[field] = 'This field is required'

            if errors:
                logger.warning(f"Validation errors: {errors}")
                return jsonify({'error': 'Invalid request', 'errors': errors}), 400

            request.validated_data = data
            return f(*args, **kwargs)
        return wrapper
    return decorator
