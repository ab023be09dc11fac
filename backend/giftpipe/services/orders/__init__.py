"""Order store: status enums, state machine and repository."""
