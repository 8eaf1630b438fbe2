import os
from dotenv import load_dotenv
from supabase import acreate_client, AsyncClient

from chatflow.chat.store import RemoteStore


load_dotenv()


supabase_url = os.getenv("PUBLIC_SUPABASE_URL")
supabase_key = os.getenv("SECRET_API_KEY")


async def create_supabase() -> AsyncClient:
    if not supabase_url or not supabase_key:
        raise RuntimeError("PUBLIC_SUPABASE_URL and SECRET_API_KEY must be set.")
    return await acreate_client(supabase_url, supabase_key)


async def create_store() -> RemoteStore:
    return RemoteStore(await create_supabase())
