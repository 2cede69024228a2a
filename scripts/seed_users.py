"""Seed verified demo users around central Tokyo for map and matching tests."""
import asyncio
import sys
from datetime import timedelta
sys.path.insert(0, ".")

from sqlalchemy import select
from app.database import async_session_factory, create_all, engine
from app.models.user import User
from app.utils.clock import utcnow


DEMO_USERS = [
    {
        "name": "田中太郎",
        "phone_number": "+81901234567",
        "gender": "male",
        "address": "東京都渋谷区",
        "latitude": 35.6762,
        "longitude": 139.6503,  # Shibuya
        "profile_photo": "https://randomuser.me/api/portraits/men/1.jpg",
        "bio": "こんにちは！映画と読書が好きです。",
        "is_online": True,
        "match_count": 3,
        "actual_meet_count": 1,
    },
    {
        "name": "佐藤花子",
        "phone_number": "+81901234568",
        "gender": "female",
        "address": "東京都新宿区",
        "latitude": 35.6938,
        "longitude": 139.7036,  # Shinjuku
        "profile_photo": "https://randomuser.me/api/portraits/women/1.jpg",
        "bio": "カフェ巡りとヨガが趣味です♪",
        "is_online": True,
        "match_count": 5,
        "actual_meet_count": 2,
    },
    {
        "name": "鈴木一郎",
        "phone_number": "+81901234569",
        "gender": "male",
        "address": "東京都港区",
        "latitude": 35.6654,
        "longitude": 139.7525,  # Roppongi
        "profile_photo": "https://randomuser.me/api/portraits/men/2.jpg",
        "bio": "IT関係の仕事をしています。よろしくお願いします！",
        "is_online": False,
        "match_count": 2,
        "actual_meet_count": 0,
        "last_seen_minutes_ago": 30,
    },
    {
        "name": "高橋美咲",
        "phone_number": "+81901234570",
        "gender": "female",
        "address": "東京都品川区",
        "latitude": 35.6284,
        "longitude": 139.7281,  # Shinagawa
        "profile_photo": "https://randomuser.me/api/portraits/women/2.jpg",
        "bio": "料理と旅行が大好きです！",
        "is_online": True,
        "match_count": 7,
        "actual_meet_count": 3,
    },
    {
        "name": "伊藤健太",
        "phone_number": "+81901234571",
        "gender": "male",
        "address": "東京都台東区",
        "latitude": 35.7148,
        "longitude": 139.7967,  # Asakusa
        "profile_photo": "https://randomuser.me/api/portraits/men/3.jpg",
        "bio": "スポーツ観戦が好きです。",
        "is_online": True,
        "match_count": 1,
        "actual_meet_count": 0,
    },
    {
        "name": "渡辺ゆい",
        "phone_number": "+81901234572",
        "gender": "other",
        "address": "東京都目黒区",
        "latitude": 35.6339,
        "longitude": 139.7157,  # Meguro
        "profile_photo": "",
        "bio": "",
        "is_online": True,
        "match_count": 0,
        "actual_meet_count": 0,
    },
]


async def seed():
    await create_all(engine)
    now = utcnow()
    async with async_session_factory() as session:
        for data in DEMO_USERS:
            data = dict(data)
            minutes_ago = data.pop("last_seen_minutes_ago", 0)
            existing = await session.execute(
                select(User).where(User.phone_number == data["phone_number"])
            )
            if existing.scalar_one_or_none() is None:
                session.add(
                    User(
                        **data,
                        sms_verified=True,
                        last_seen=now - timedelta(minutes=minutes_ago),
                    )
                )
                print(f"  Seeded user {data['name']} ({data['gender']})")
            else:
                print(f"  User {data['phone_number']} already exists, skipping.")
        await session.commit()
    print("Done seeding users.")


if __name__ == "__main__":
    asyncio.run(seed())
