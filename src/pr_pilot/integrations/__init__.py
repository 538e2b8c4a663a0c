"""External collaborators: task store, GitHub, Vercel, mobile builds."""
