from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('indexing', '0002_add_search_indexes'),
    ]

    operations = [
        migrations.AddField(
            model_name='chunkqueueitem',
            name='claimed_at',
            field=models.DateTimeField(
                blank=True, null=True,
                help_text='When a worker last claimed the item; stale claims are reclaimable',
            ),
        ),
    ]
