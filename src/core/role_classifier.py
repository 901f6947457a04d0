"""
Classifies Matrix senders so the bridge never relays its own echoes.
"""
from src.core.types import Role


class RoleClassifier:

    def __init__(self, matrix_client):
        self.matrix_client = matrix_client

    def classify(self, matrix_id: str) -> Role:
        if matrix_id == self.matrix_client.get_sender_id():
            return Role.BOT
        if self.matrix_client.is_remote_user(matrix_id):
            return Role.PUPPET
        return Role.USER

    def is_user(self, matrix_id: str) -> bool:
        return self.classify(matrix_id) is Role.USER
