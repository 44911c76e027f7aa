"""
Migration adding the vector and full-text search indexes.

HNSW (Hierarchical Navigable Small World) provides:
- Fast approximate nearest neighbor search
- No need to pre-train like IVFFlat
- Good balance of speed and recall

The GIN expression indexes back the lexical half of hybrid search.
"""
from django.db import migrations


class Migration(migrations.Migration):

    dependencies = [
        ('indexing', '0001_initial'),
    ]

    operations = [
        # Cosine distance is what the search engine orders by
        migrations.RunSQL(
            sql="""
                CREATE INDEX IF NOT EXISTS chunks_text_embedding_hnsw_idx
                ON chunks_text
                USING hnsw (embedding vector_cosine_ops)
                WITH (m = 16, ef_construction = 64);
            """,
            reverse_sql="DROP INDEX IF EXISTS chunks_text_embedding_hnsw_idx;"
        ),
        migrations.RunSQL(
            sql="""
                CREATE INDEX IF NOT EXISTS figures_embedding_hnsw_idx
                ON figures
                USING hnsw (embedding vector_cosine_ops)
                WITH (m = 16, ef_construction = 64);
            """,
            reverse_sql="DROP INDEX IF EXISTS figures_embedding_hnsw_idx;"
        ),
        migrations.RunSQL(
            sql="""
                CREATE INDEX IF NOT EXISTS chunks_text_content_fts_idx
                ON chunks_text
                USING gin (to_tsvector('english', content));
            """,
            reverse_sql="DROP INDEX IF EXISTS chunks_text_content_fts_idx;"
        ),
    ]
