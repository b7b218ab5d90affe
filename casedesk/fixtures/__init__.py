"""Static content: e-mail templates."""
