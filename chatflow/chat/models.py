profiles_sql = """
CREATE TABLE profiles (
    id UUID PRIMARY KEY REFERENCES auth.users(id) ON DELETE CASCADE,
    email TEXT NOT NULL,
    username TEXT UNIQUE,
    avatar_url TEXT,
    created_at TIMESTAMPTZ DEFAULT now()
);
"""

conversations_sql = """
CREATE TABLE conversations (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),

    -- least(a, b) || ':' || greatest(a, b) for two-party conversations
    direct_pair_key TEXT,

    -- Ensure only one conversation per user pair
    CONSTRAINT unique_direct_pair UNIQUE (direct_pair_key)
);
"""

conversation_participants_sql = """
CREATE TABLE conversation_participants (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    conversation_id UUID NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    user_id UUID NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
    created_at TIMESTAMPTZ DEFAULT now(),
    UNIQUE (conversation_id, user_id)
);
"""

messages_sql = """
CREATE TABLE messages (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    conversation_id UUID NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    sender_id UUID NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
    content TEXT,
    image_url TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),

    CONSTRAINT content_or_image CHECK ((content IS NULL) <> (image_url IS NULL))
);

CREATE INDEX messages_conversation_created_idx ON messages (conversation_id, created_at);
"""

create_direct_conversation_sql = """
CREATE OR REPLACE FUNCTION create_direct_conversation(_user_a UUID, _user_b UUID)
RETURNS UUID
LANGUAGE plpgsql
SECURITY DEFINER
SET search_path = public
AS $$
DECLARE
    _key TEXT;
    _conversation_id UUID;
BEGIN
    IF _user_a IS NULL OR _user_b IS NULL OR _user_a = _user_b THEN
        RAISE EXCEPTION 'A conversation needs two different participants';
    END IF;

    _key := least(_user_a::text, _user_b::text) || ':' || greatest(_user_a::text, _user_b::text);

    INSERT INTO conversations (direct_pair_key)
    VALUES (_key)
    ON CONFLICT (direct_pair_key) DO NOTHING
    RETURNING id INTO _conversation_id;

    -- Lost the race (or it already existed): hand back the winner
    IF _conversation_id IS NULL THEN
        SELECT id INTO _conversation_id FROM conversations WHERE direct_pair_key = _key;
        RETURN _conversation_id;
    END IF;

    INSERT INTO conversation_participants (conversation_id, user_id)
    VALUES (_conversation_id, _user_a), (_conversation_id, _user_b);

    RETURN _conversation_id;
END;
$$;

REVOKE ALL ON FUNCTION create_direct_conversation(UUID, UUID) FROM PUBLIC;
GRANT EXECUTE ON FUNCTION create_direct_conversation(UUID, UUID) TO service_role;
"""

realtime_publication_sql = """
ALTER PUBLICATION supabase_realtime ADD TABLE messages, conversations;
"""

SCHEMA_SQL = [
    profiles_sql,
    conversations_sql,
    conversation_participants_sql,
    messages_sql,
    create_direct_conversation_sql,
    realtime_publication_sql,
]
