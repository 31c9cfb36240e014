"""TaskAPI HTTP layer — request pipeline, schemas, task and comment routes."""
