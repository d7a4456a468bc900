"""Generation pipeline: unit generator, scheduler, resume and facade."""
