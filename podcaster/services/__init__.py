"""Pipeline services and external collaborator interfaces."""
