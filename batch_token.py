from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.batch_secret, salt="batch-trigger")


def generate_batch_token(issuer: str = "scheduler") -> str:
    serializer = _serializer()
    return serializer.dumps({"scope": "all", "iss": issuer})


def validate_batch_token(token: str, max_age_hours: int = 24) -> bool:
    if not token:
        return False
    serializer = _serializer()
    try:
        data = serializer.loads(token, max_age=max_age_hours * 3600)
    except BadSignature:
        return False
    return isinstance(data, dict) and data.get("scope") == "all"
