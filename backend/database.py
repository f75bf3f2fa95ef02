from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from dotenv import load_dotenv
from pathlib import Path
import os

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB connection with replica set for transactions
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017/?replicaSet=rs0')
db_name = os.environ.get('DB_NAME', 'waste_billing')

client = AsyncIOMotorClient(mongo_url)
db = client[db_name]


async def get_client() -> AsyncIOMotorClient:
    return client


async def get_database() -> AsyncIOMotorDatabase:
    return db
