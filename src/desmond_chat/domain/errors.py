"""Exceptions raised across the chat client."""


class ChatError(Exception):
    """Base class for chat client errors."""
    pass


class CredentialMissing(ChatError):
    """Raised when an operation needs a credential and none is set."""

    def __init__(self, message: str = "Please provide a License Key in the settings."):
        super().__init__(message)


class CredentialRejected(ChatError):
    """Raised when the backend refuses the credential."""

    def __init__(self, message: str = "The provided License Key is not valid. Please check it and try again."):
        super().__init__(message)


class StreamInProgress(ChatError):
    """Raised when a send is attempted while another generation is running."""

    def __init__(self, message: str = "Please wait for the current message to finish before sending another."):
        super().__init__(message)


class ConversationNotFound(ChatError):
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} not found")


class StorageError(ChatError):
    """Raised when the conversation store cannot be written."""

    def __init__(self, message: str = "Failed to save chat history. Please check your storage settings."):
        super().__init__(message)


class StorageQuotaExceeded(StorageError):
    """Raised when the conversation store is out of space."""

    def __init__(self, message: str = (
        "Storage quota exceeded. Your chat history could not be saved. "
        "Please clear some browser data."
    )):
        super().__init__(message)


class FileProcessingError(ChatError):
    """Raised when an uploaded file fails server-side processing."""

    def __init__(self, file_name: str):
        self.file_name = file_name
        super().__init__(f"File processing failed: {file_name}")


class TitleGenerationInProgress(ChatError):
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"A title is already being generated for {conversation_id}")
