from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def make_redis_client(url: str):
    import redis
    return redis.Redis.from_url(url, decode_responses=True)
